import asyncio
import contextlib
import json
import os

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer

from whkmail.handlers import build_app, serve
from whkmail.models import Folder, Message, MessageResponse, MessagesResponse, StatusResponse
from whkmail.state import EventBus, State, body_ready_event

ACCOUNT = "test@example.com"


class StubStore:
    def __init__(self, folders=None, msgs=None, msg=None, err=None):
        self.folders = folders or []
        self.msgs = msgs or []
        self.msg = msg
        self.err = err
        self.deleted = []

    def list_folders(self):
        if self.err:
            raise self.err
        return self.folders

    def list_messages(self, folder, limit):
        if self.err:
            raise self.err
        return self.msgs

    def get_message(self, folder, uid):
        if self.err:
            raise self.err
        return self.msg

    def delete_message(self, folder, uid):
        if self.err:
            raise self.err
        self.deleted.append((folder, uid))


class StubProvider:
    def __init__(self, mark_read_error=None):
        self.mark_read_error = mark_read_error
        self.calls = []

    async def fetch_body(self, folder, uid):
        self.calls.append(("fetch_body", folder, uid))
        return ""

    async def mark_read(self, folder, uid):
        self.calls.append(("mark_read", folder, uid))
        if self.mark_read_error:
            raise self.mark_read_error

    async def mark_unread(self, folder, uid):
        self.calls.append(("mark_unread", folder, uid))

    async def mark_spam(self, folder, uid):
        self.calls.append(("mark_spam", folder, uid))

    async def move_to_folder(self, src, dst, uid):
        self.calls.append(("move", src, dst, uid))

    async def trash(self, folder, uid):
        self.calls.append(("trash", folder, uid))

    async def trash_batch(self, folder, uids):
        self.calls.append(("trash_batch", folder, list(uids)))

    async def permanent_delete(self, folder, uid):
        self.calls.append(("permanent_delete", folder, uid))

    async def permanent_delete_batch(self, folder, uids):
        self.calls.append(("permanent_delete_batch", folder, list(uids)))

    async def sync_folder(self, folder):
        self.calls.append(("sync", folder))

    async def resolve_sent_folder(self):
        return "[Gmail]/Sent Mail"


class StubSender:
    def __init__(self, err=None):
        self.err = err
        self.sent = []

    def send(self, message):
        if self.err:
            raise self.err
        self.sent.append(message)


def new_state(store, provider=None, **kwargs):
    state = State(EventBus())
    state.add_account(ACCOUNT, store, provider, **kwargs)
    return state


@contextlib.asynccontextmanager
async def serving(state):
    client = TestClient(TestServer(build_app(state)))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


def message_url(account, folder, uid, action=""):
    url = f"/accounts/{account}/folders/{folder}/messages/{uid}"
    return f"{url}/{action}" if action else url


@pytest.mark.asyncio
async def test_status_ok():
    state = new_state(StubStore(folders=[Folder(name="INBOX", unread=2)]))
    async with serving(state) as client:
        resp = await client.get("/status")
        assert resp.status == 200
        status = StatusResponse.from_dict(await resp.json())
    assert len(status.accounts) == 1
    assert [f.name for f in status.accounts[0].folders] == ["INBOX"]
    assert status.accounts[0].folders[0].unread == 2


@pytest.mark.asyncio
async def test_status_sorted_by_account():
    state = State(EventBus())
    state.add_account("b@example.com", StubStore(), None)
    state.add_account("a@example.com", StubStore(), None)
    async with serving(state) as client:
        resp = await client.get("/status")
        status = StatusResponse.from_dict(await resp.json())
    assert [a.account for a in status.accounts] == ["a@example.com", "b@example.com"]


@pytest.mark.asyncio
async def test_status_store_error():
    state = new_state(StubStore(err=RuntimeError("db error")))
    async with serving(state) as client:
        resp = await client.get("/status")
        assert resp.status == 500
        assert "db error" in await resp.text()


@pytest.mark.asyncio
async def test_messages_ok():
    state = new_state(StubStore(msgs=[Message(uid=1, subject="Hi")]))
    async with serving(state) as client:
        resp = await client.get(f"/accounts/{ACCOUNT}/folders/INBOX/messages")
        assert resp.status == 200
        listing = MessagesResponse.from_dict(await resp.json())
    assert len(listing.messages) == 1
    assert listing.total == 1
    assert listing.folder == "INBOX"


@pytest.mark.asyncio
async def test_message_found():
    state = new_state(StubStore(msg=Message(uid=7, subject="Hello")))
    async with serving(state) as client:
        resp = await client.get(message_url(ACCOUNT, "INBOX", 7))
        assert resp.status == 200
        body = MessageResponse.from_dict(await resp.json())
    assert body.message.subject == "Hello"


@pytest.mark.asyncio
async def test_message_not_found():
    state = new_state(StubStore(msg=None))
    async with serving(state) as client:
        resp = await client.get(message_url(ACCOUNT, "INBOX", 99))
        assert resp.status == 404


@pytest.mark.asyncio
async def test_message_invalid_uid():
    state = new_state(StubStore())
    async with serving(state) as client:
        resp = await client.get(message_url(ACCOUNT, "INBOX", "bad"))
        assert resp.status == 400


@pytest.mark.asyncio
async def test_message_unknown_account():
    state = new_state(StubStore(msg=Message(uid=1)))
    async with serving(state) as client:
        resp = await client.get(message_url("nobody@example.com", "INBOX", 1))
        assert resp.status == 404


@pytest.mark.asyncio
async def test_message_without_body_queues_fetch():
    state = new_state(StubStore(msg=Message(uid=7, body_fetched=False)), StubProvider())
    async with serving(state) as client:
        resp = await client.get(message_url(ACCOUNT, "INBOX", 7))
        assert resp.status == 200
    assert state.jobs.qsize() == 1


@pytest.mark.asyncio
async def test_message_with_body_queues_nothing():
    state = new_state(StubStore(msg=Message(uid=7, body_fetched=True)), StubProvider())
    async with serving(state) as client:
        resp = await client.get(message_url(ACCOUNT, "INBOX", 7))
        assert resp.status == 200
    assert state.jobs.qsize() == 0


@pytest.mark.asyncio
async def test_mark_read_ok():
    provider = StubProvider()
    state = new_state(StubStore(), provider)
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 42, "read"))
        assert resp.status == 204
    assert provider.calls == [("mark_read", "INBOX", 42)]


@pytest.mark.asyncio
async def test_mark_read_provider_error():
    provider = StubProvider(mark_read_error=RuntimeError("imap down"))
    state = new_state(StubStore(), provider)
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 42, "read"))
        assert resp.status == 500
        assert "imap down" in await resp.text()


@pytest.mark.asyncio
async def test_mark_read_missing_provider():
    state = new_state(StubStore())
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 42, "read"))
        assert resp.status == 503


@pytest.mark.asyncio
@pytest.mark.parametrize("uid", ["not-a-number", "-1", "+5", "4294967296"])
async def test_mark_read_invalid_uid(uid):
    state = new_state(StubStore(), StubProvider())
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", uid, "read"))
        assert resp.status == 400


@pytest.mark.asyncio
async def test_mark_read_unknown_account():
    state = new_state(StubStore(), StubProvider())
    async with serving(state) as client:
        resp = await client.post(message_url("stranger@example.com", "INBOX", 1, "read"))
        assert resp.status == 404


@pytest.mark.asyncio
async def test_mark_unread_and_spam_call_provider():
    provider = StubProvider()
    state = new_state(StubStore(), provider)
    async with serving(state) as client:
        first = await client.post(message_url(ACCOUNT, "INBOX", 3, "unread"))
        second = await client.post(message_url(ACCOUNT, "INBOX", 4, "spam"))
        assert (first.status, second.status) == (204, 204)
    assert provider.calls == [("mark_unread", "INBOX", 3), ("mark_spam", "INBOX", 4)]


@pytest.mark.asyncio
async def test_trash_queues_and_drops_cache_row():
    store = StubStore()
    state = new_state(store, StubProvider())
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 5, "trash"))
        assert resp.status == 202
    assert state.trash_jobs.qsize() == 1
    assert store.deleted == [("INBOX", 5)]


@pytest.mark.asyncio
async def test_permanent_delete_queues_and_drops_cache_row():
    store = StubStore()
    state = new_state(store, StubProvider())
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "Trash", 6, "delete"))
        assert resp.status == 202
    assert state.delete_jobs.qsize() == 1
    assert store.deleted == [("Trash", 6)]


@pytest.mark.asyncio
async def test_trash_without_provider():
    store = StubStore()
    state = new_state(store)
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 5, "trash"))
        assert resp.status == 503
    assert store.deleted == []


@pytest.mark.asyncio
async def test_move_ok():
    store = StubStore()
    provider = StubProvider()
    state = new_state(store, provider)
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 9, "move"),
                                 json={"target": "Archive/2024"})
        assert resp.status == 204
    assert provider.calls == [("move", "INBOX", "Archive/2024", 9)]
    assert store.deleted == [("INBOX", 9)]


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"{not json", b'{"target":""}', b"[]", b'{"target":5}'])
async def test_move_invalid_body(body):
    provider = StubProvider()
    state = new_state(StubStore(), provider)
    async with serving(state) as client:
        resp = await client.post(message_url(ACCOUNT, "INBOX", 9, "move"), data=body)
        assert resp.status == 400
    assert provider.calls == []


@pytest.mark.asyncio
async def test_send_without_sender():
    state = new_state(StubStore(), StubProvider())
    async with serving(state) as client:
        resp = await client.post(f"/accounts/{ACCOUNT}/send", json={"to": ["b@example.com"]})
        assert resp.status == 503
        assert "no sender configured" in await resp.text()


@pytest.mark.asyncio
async def test_send_delivers_and_resyncs():
    provider = StubProvider()
    sender = StubSender()
    state = new_state(StubStore(), provider, sender=sender)
    async with serving(state) as client:
        resp = await client.post(f"/accounts/{ACCOUNT}/send", json={
            "to": ["bob@example.com"],
            "subject": "Re: Hi",
            "body": "text",
            "in_reply_to": "<parent@example.com>",
            "source_folder": "INBOX",
        })
        assert resp.status == 204
        for _ in range(200):
            if len(provider.calls) >= 2:
                break
            await asyncio.sleep(0.01)
    assert len(sender.sent) == 1
    sent = sender.sent[0]
    assert sent.sender == ACCOUNT
    assert sent.to == ["bob@example.com"]
    assert sent.subject == "Re: Hi"
    assert sent.in_reply_to == "<parent@example.com>"
    assert provider.calls == [("sync", "INBOX"), ("sync", "[Gmail]/Sent Mail")]


@pytest.mark.asyncio
async def test_send_error():
    sender = StubSender(err=RuntimeError("smtp down"))
    state = new_state(StubStore(), StubProvider(), sender=sender)
    async with serving(state) as client:
        resp = await client.post(f"/accounts/{ACCOUNT}/send", json={"to": ["b@example.com"]})
        assert resp.status == 500
        assert "smtp down" in await resp.text()


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"", b"{bad", b'{"to":"b@example.com"}'])
async def test_send_invalid_body(body):
    sender = StubSender()
    state = new_state(StubStore(), StubProvider(), sender=sender)
    async with serving(state) as client:
        resp = await client.post(f"/accounts/{ACCOUNT}/send", data=body)
        assert resp.status == 400
        assert (await resp.text()).startswith("invalid body: ")
    assert sender.sent == []


@pytest.mark.asyncio
async def test_remove_account_cancels_and_deregisters():
    called = []
    state = new_state(StubStore(), cancel=lambda: called.append(True))
    state.remove_account(ACCOUNT)
    assert called == [True]
    async with serving(state) as client:
        resp = await client.get(f"/accounts/{ACCOUNT}/folders/INBOX/messages")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_handle_remove_account():
    state = new_state(StubStore())
    async with serving(state) as client:
        resp = await client.delete(f"/accounts/{ACCOUNT}")
        assert resp.status == 204
        again = await client.delete(f"/accounts/{ACCOUNT}")
        assert again.status == 404
    assert state.lookup_account(ACCOUNT) is None


@pytest.mark.asyncio
async def test_events_stream_published_event():
    state = new_state(StubStore())
    async with serving(state) as client:
        resp = await client.get("/events")
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["Cache-Control"] == "no-cache"
        state.bus.publish(body_ready_event(ACCOUNT, "INBOX", 7, ""))
        line = await asyncio.wait_for(resp.content.readline(), 5)
        blank = await asyncio.wait_for(resp.content.readline(), 5)
        resp.close()
    assert line.startswith(b"data: ")
    payload = json.loads(line[len(b"data: "):])
    assert payload["account"] == ACCOUNT
    assert payload["folder"] == "INBOX"
    assert payload["uid"] == 7
    assert payload["reason"] == ""
    assert blank == b"\n"


@pytest.mark.asyncio
async def test_serve_on_unix_socket(tmp_path):
    socket_path = str(tmp_path / "d.sock")
    state = new_state(StubStore(folders=[Folder(name="INBOX")]))
    task = asyncio.create_task(serve(state, socket_path))
    for _ in range(200):
        if os.path.exists(socket_path):
            break
        await asyncio.sleep(0.01)
    connector = aiohttp.UnixConnector(path=socket_path)
    async with aiohttp.ClientSession(connector=connector) as session:
        async with session.get("http://daemon/status") as resp:
            assert resp.status == 200
            status = StatusResponse.from_dict(await resp.json())
    assert [a.account for a in status.accounts] == [ACCOUNT]
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    assert not os.path.exists(socket_path)