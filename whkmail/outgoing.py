"""Outbound message model and its RFC 5322 wire encoding."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import format_datetime


@dataclass
class OutgoingMessage:
    """A message to submit; headers are typed fields, not a raw block."""

    sender: str = ""
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)
    date: datetime | None = None
    message_id: str = ""

    def recipients(self) -> list[str]:
        """Envelope recipients: To first, then Cc."""
        return [*self.to, *self.cc]

    def rfc5322(self) -> str:
        """Encode the message as an RFC 5322 block ready for DATA."""
        date = self.date if self.date is not None else datetime.now()
        if date.tzinfo is None:
            date = date.astimezone()
        msg_id = self.message_id or generate_message_id(self.sender, date)

        headers: list[tuple[str, str]] = [("From", self.sender)]
        if self.to:
            headers.append(("To", ", ".join(self.to)))
        if self.cc:
            headers.append(("Cc", ", ".join(self.cc)))
        headers.append(("Subject", self.subject))
        headers.append(("Date", format_datetime(date)))
        headers.append(("Message-ID", msg_id))
        if self.in_reply_to:
            headers.append(("In-Reply-To", self.in_reply_to))
        if self.references:
            headers.append(("References", " ".join(self.references)))
        headers.append(("MIME-Version", "1.0"))
        headers.append(("Content-Type", "text/plain; charset=UTF-8"))
        headers.append(("Content-Transfer-Encoding", "8bit"))

        head = "".join(f"{key}: {value}\r\n" for key, value in headers)
        # SMTP DATA requires CRLF; some relays reject bare LF.
        return head + "\r\n" + self.body.replace("\n", "\r\n")


def generate_message_id(sender: str, when: datetime) -> str:
    """Build a unique Message-ID from the timestamp, random bytes and sender domain."""
    domain = "local"
    at = sender.rfind("@")
    if 0 <= at < len(sender) - 1:
        domain = sender[at + 1 :].removesuffix(">")
    return f"<{int(when.timestamp())}.{secrets.token_hex(8)}@{domain}>"