"""Domain records shared by the cache, the daemon and the client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return _EPOCH
    return datetime.fromisoformat(value)


@dataclass
class Message:
    """A cached message: headers, flags and (optionally) its body."""

    uid: int = 0
    folder: str = ""
    subject: str = ""
    sender: str = ""
    to: str = ""
    date: datetime = _EPOCH
    unread: bool = False
    flagged: bool = False
    answered: bool = False
    draft: bool = False
    body_text: str = ""
    body_fetched: bool = False
    message_id: str = ""
    in_reply_to: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "folder": self.folder,
            "subject": self.subject,
            "from": self.sender,
            "to": self.to,
            "date": self.date.isoformat(),
            "unread": self.unread,
            "flagged": self.flagged,
            "answered": self.answered,
            "draft": self.draft,
            "body_text": self.body_text,
            "body_fetched": self.body_fetched,
            "message_id": self.message_id,
            "in_reply_to": self.in_reply_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            uid=int(data.get("uid", 0)),
            folder=data.get("folder", ""),
            subject=data.get("subject", ""),
            sender=data.get("from", ""),
            to=data.get("to", ""),
            date=_parse_date(data.get("date")),
            unread=bool(data.get("unread", False)),
            flagged=bool(data.get("flagged", False)),
            answered=bool(data.get("answered", False)),
            draft=bool(data.get("draft", False)),
            body_text=data.get("body_text", ""),
            body_fetched=bool(data.get("body_fetched", False)),
            message_id=data.get("message_id", ""),
            in_reply_to=data.get("in_reply_to", ""),
        )


@dataclass
class Folder:
    """A mailbox with live message and unread counts."""

    name: str = ""
    delimiter: str = ""
    message_count: int = 0
    unread: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "delimiter": self.delimiter,
            "message_count": self.message_count,
            "unread": self.unread,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Folder:
        return cls(
            name=data.get("name", ""),
            delimiter=data.get("delimiter", ""),
            message_count=int(data.get("message_count", 0)),
            unread=int(data.get("unread", 0)),
        )


@dataclass
class AccountStatus:
    """One account's folders and whether it is currently syncing."""

    account: str = ""
    syncing: bool = False
    folders: list[Folder] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account,
            "syncing": self.syncing,
            "folders": [f.to_dict() for f in self.folders],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountStatus:
        return cls(
            account=data.get("account", ""),
            syncing=bool(data.get("syncing", False)),
            folders=[Folder.from_dict(f) for f in data.get("folders") or []],
        )


@dataclass
class StatusResponse:
    """Body of GET /status."""

    accounts: list[AccountStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"accounts": [a.to_dict() for a in self.accounts]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusResponse:
        return cls(accounts=[AccountStatus.from_dict(a) for a in data.get("accounts") or []])


@dataclass
class MessagesResponse:
    """Body of GET .../messages: a folder's cached message list."""

    folder: str = ""
    messages: list[Message] = field(default_factory=list)
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "folder": self.folder,
            "messages": [m.to_dict() for m in self.messages],
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessagesResponse:
        return cls(
            folder=data.get("folder", ""),
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            total=int(data.get("total", 0)),
        )


@dataclass
class MessageResponse:
    """Body of GET .../messages/{uid}."""

    message: Message = field(default_factory=Message)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageResponse:
        return cls(message=Message.from_dict(data.get("message") or {}))


@dataclass
class SendRequest:
    """A composed message handed to the daemon for delivery."""

    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    in_reply_to: str = ""
    references: list[str] = field(default_factory=list)
    source_folder: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "to": list(self.to),
            "cc": list(self.cc),
            "subject": self.subject,
            "body": self.body,
            "in_reply_to": self.in_reply_to,
            "references": list(self.references),
            "source_folder": self.source_folder,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SendRequest:
        return cls(
            to=list(data.get("to") or []),
            cc=list(data.get("cc") or []),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            in_reply_to=data.get("in_reply_to", ""),
            references=list(data.get("references") or []),
            source_folder=data.get("source_folder", ""),
        )


@runtime_checkable
class Store(Protocol):
    """Persistence contract for the message and folder cache."""

    def upsert_message(self, message: Message) -> bool:
        """Insert or update headers; True only when a new row was created."""
        ...

    def upsert_messages(self, messages: list[Message]) -> list[bool]:
        """Batch upsert in one transaction; result is parallel to the input."""
        ...

    def list_messages(self, folder: str, limit: int) -> list[Message]:
        """Most recent messages of a folder, newest first, without bodies."""
        ...

    def get_message(self, folder: str, uid: int) -> Message | None:
        """One message with its body, or None when absent."""
        ...

    def set_body_text(self, folder: str, uid: int, body: str) -> None:
        """Cache a fetched body; never overwritten by header upserts."""
        ...

    def mark_seen(self, folder: str, uid: int) -> None:
        """Mark a cached message read."""
        ...

    def mark_unseen(self, folder: str, uid: int) -> None:
        """Mark a cached message unread."""
        ...

    def delete_message(self, folder: str, uid: int) -> None:
        """Remove one cached message."""
        ...

    def upsert_folder(self, folder: Folder) -> None:
        """Insert or update a folder record."""
        ...

    def list_folders(self) -> list[Folder]:
        """All folders ordered by name with live counts."""
        ...

    def get_folder_sync(self, folder: str) -> tuple[int, int]:
        """Stored (UIDVALIDITY, UIDNEXT); (0, 1) when never synced."""
        ...

    def update_folder_sync(self, folder: str, uid_validity: int, uid_next: int) -> None:
        """Persist UIDVALIDITY and UIDNEXT after a sync pass."""
        ...

    def delete_folder_messages(self, folder: str) -> None:
        """Drop every cached message of a folder."""
        ...

    def close(self) -> None:
        """Release the adapter's resources."""
        ...