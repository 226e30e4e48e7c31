from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

from whkmail.outgoing import OutgoingMessage, generate_message_id

WHEN = datetime(2026, 4, 23, 12, 0, 0, tzinfo=timezone.utc)


def test_recipients_merges_to_and_cc():
    m = OutgoingMessage(to=["a@example.com", "b@example.com"], cc=["c@example.com"])
    got = m.recipients()
    assert len(got) == 3
    assert got[0] == "a@example.com"
    assert got[2] == "c@example.com"


def test_rfc5322_includes_all_headers():
    m = OutgoingMessage(
        sender="alice@example.com",
        to=["bob@example.com"],
        cc=["carol@example.com"],
        subject="Re: Hi",
        body="Hello there\nSecond line",
        in_reply_to="<parent@example.com>",
        references=["<root@example.com>", "<parent@example.com>"],
        date=WHEN,
        message_id="<self@example.com>",
    )
    out = m.rfc5322()
    for want in [
        "From: alice@example.com\r\n",
        "To: bob@example.com\r\n",
        "Cc: carol@example.com\r\n",
        "Subject: Re: Hi\r\n",
        "Message-ID: <self@example.com>\r\n",
        "In-Reply-To: <parent@example.com>\r\n",
        "References: <root@example.com> <parent@example.com>\r\n",
        "MIME-Version: 1.0\r\n",
        "Content-Type: text/plain; charset=UTF-8\r\n",
        "\r\nHello there\r\nSecond line",
    ]:
        assert want in out


def test_rfc5322_no_cc_when_empty():
    m = OutgoingMessage(
        sender="alice@example.com",
        to=["bob@example.com"],
        subject="Hi",
        date=WHEN,
        message_id="<self@example.com>",
    )
    assert "Cc:" not in m.rfc5322()


def test_rfc5322_generates_message_id():
    m = OutgoingMessage(
        sender="alice@example.com",
        to=["bob@example.com"],
        subject="Hi",
        date=WHEN,
    )
    out = m.rfc5322()
    assert "Message-ID: <" in out
    assert "@example.com>" in out


def test_rfc5322_date_header_format():
    m = OutgoingMessage(sender="alice@example.com", date=WHEN, message_id="<x@example.com>")
    assert "Date: Thu, 23 Apr 2026 12:00:00 +0000\r\n" in m.rfc5322()


def test_rfc5322_omits_optional_headers_and_separates_body():
    m = OutgoingMessage(sender="alice@example.com", date=WHEN, message_id="<x@example.com>", body="x")
    out = m.rfc5322()
    assert "To:" not in out
    assert "In-Reply-To:" not in out
    assert "References:" not in out
    assert out.endswith("Content-Transfer-Encoding: 8bit\r\n\r\nx")


def test_rfc5322_without_date_still_has_date_header():
    m = OutgoingMessage(sender="alice@example.com", message_id="<x@example.com>")
    out = m.rfc5322()
    date_lines = [line for line in out.split("\r\n") if line.startswith("Date: ")]
    assert len(date_lines) == 1
    parsed = parsedate_to_datetime(date_lines[0][len("Date: "):])
    assert abs(parsed - datetime.now(timezone.utc)) < timedelta(minutes=5)


def test_generate_message_id_uses_timestamp_and_domain():
    msg_id = generate_message_id("alice@example.com", WHEN)
    prefix = f"<{int(WHEN.timestamp())}."
    suffix = "@example.com>"
    assert msg_id.startswith(prefix)
    assert msg_id.endswith(suffix)
    random_part = msg_id[len(prefix):-len(suffix)]
    assert len(random_part) == 16
    assert set(random_part) <= set("0123456789abcdef")


def test_generate_message_id_strips_angle_bracket():
    msg_id = generate_message_id("Alice <alice@example.com>", WHEN)
    assert msg_id.endswith("@example.com>")
    assert not msg_id.endswith(">>")


def test_generate_message_id_falls_back_to_local():
    assert generate_message_id("nobody", WHEN).endswith("@local>")
    assert generate_message_id("trailing@", WHEN).endswith("@local>")


def test_generate_message_id_is_unique():
    ids = {generate_message_id("alice@example.com", WHEN) for _ in range(20)}
    assert len(ids) == 20