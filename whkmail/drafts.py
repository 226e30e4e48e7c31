"""On-disk storage of in-progress reply drafts, one JSON file per thread."""

from __future__ import annotations

import hashlib
import json
import os
from os import PathLike
from pathlib import Path

from whkmail.models import Message, SendRequest


def _hash_key(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).digest()[:16].hex()


def draft_key(message: Message) -> str:
    """Stable file-safe key for a reply parent: its Message-ID, else sender and subject."""
    message_id = message.message_id.strip("<>")
    if message_id:
        return _hash_key(message_id)
    return _hash_key(message.sender + "\x00" + message.subject)


def draft_path(state_dir: str | PathLike[str], account: str, key: str) -> Path:
    """Location of the draft file for (account, key) under the state directory."""
    return Path(state_dir) / "accounts" / account / "drafts" / f"{key}.json"


def save_draft(
    state_dir: str | PathLike[str], account: str, key: str, request: SendRequest
) -> None:
    """Write a draft, creating its directory on first use."""
    path = draft_path(state_dir, account, key)
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    data = json.dumps(request.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def load_draft(
    state_dir: str | PathLike[str], account: str, key: str
) -> SendRequest | None:
    """The stored draft, or None when there is none; malformed files raise ValueError."""
    try:
        raw = draft_path(state_dir, account, key).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("draft file does not hold a JSON object")
    return SendRequest.from_dict(data)


def delete_draft(state_dir: str | PathLike[str], account: str, key: str) -> None:
    """Remove a draft; a missing file is not an error."""
    draft_path(state_dir, account, key).unlink(missing_ok=True)