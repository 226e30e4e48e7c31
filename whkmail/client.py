"""Asynchronous HTTP client for the daemon's API."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import httpx

from whkmail.models import MessageResponse, MessagesResponse, SendRequest, StatusResponse
from whkmail.state import Event, EventKind

DEFAULT_BASE_URL = "http://whkmaild"
# Bound for ordinary daemon calls.
REQUEST_TIMEOUT = 30.0
# Bound for SMTP submission, which is slower than ordinary mailbox operations.
SEND_TIMEOUT = 90.0

# Characters left unescaped inside a single path segment; "/" is always escaped
# so folder names containing slashes stay one segment.
_SEGMENT_SAFE = "$&+:=@"


def _segment(value: str) -> str:
    return quote(value, safe=_SEGMENT_SAFE)


def _message_path(account: str, folder: str, uid: int) -> str:
    return f"/accounts/{_segment(account)}/folders/{_segment(folder)}/messages/{uid}"


class DaemonError(Exception):
    """The daemon answered with an error status."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


def _parse_event(data: Any) -> Event:
    if not isinstance(data, dict):
        raise ValueError("event is not an object")
    return Event(
        kind=EventKind(data["kind"]),
        account=str(data.get("account", "")),
        folder=str(data.get("folder", "")),
        uid=int(data.get("uid", 0)),
        reason=str(data.get("reason", "")),
    )


class DaemonClient:
    """Talks to the daemon over HTTP; use as an async context manager or call aclose."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=REQUEST_TIMEOUT
        )

    async def __aenter__(self) -> DaemonClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying connections."""
        await self._http.aclose()

    async def _get_json(self, path: str) -> dict[str, Any]:
        response = await self._http.get(path)
        if response.status_code != 200:
            raise DaemonError(f"HTTP {response.status_code}", response.status_code)
        return response.json()

    async def status(self) -> StatusResponse:
        """Every account with its folders and sync state."""
        return StatusResponse.from_dict(await self._get_json("/status"))

    async def messages(self, account: str, folder: str) -> MessagesResponse:
        """The cached message list of a folder."""
        path = f"/accounts/{_segment(account)}/folders/{_segment(folder)}/messages"
        return MessagesResponse.from_dict(await self._get_json(path))

    async def message(self, account: str, folder: str, uid: int) -> MessageResponse:
        """One cached message, with its body when already fetched."""
        return MessageResponse.from_dict(
            await self._get_json(_message_path(account, folder, uid))
        )

    async def _post(self, account: str, folder: str, uid: int, action: str) -> None:
        response = await self._http.post(f"{_message_path(account, folder, uid)}/{action}")
        if response.status_code >= 400:
            raise DaemonError(f"{action}: HTTP {response.status_code}", response.status_code)

    async def mark_read(self, account: str, folder: str, uid: int) -> None:
        """Flag a message as seen."""
        await self._post(account, folder, uid, "read")

    async def mark_unread(self, account: str, folder: str, uid: int) -> None:
        """Clear the seen flag of a message."""
        await self._post(account, folder, uid, "unread")

    async def trash(self, account: str, folder: str, uid: int) -> None:
        """Move a message to the account's trash."""
        await self._post(account, folder, uid, "trash")

    async def permanent_delete(self, account: str, folder: str, uid: int) -> None:
        """Expunge a message for good."""
        await self._post(account, folder, uid, "delete")

    async def mark_spam(self, account: str, folder: str, uid: int) -> None:
        """Move a message to the account's spam mailbox."""
        await self._post(account, folder, uid, "spam")

    async def move_to_folder(
        self, account: str, src_folder: str, dst_folder: str, uid: int
    ) -> None:
        """Move a message from src_folder to dst_folder."""
        response = await self._http.post(
            f"{_message_path(account, src_folder, uid)}/move", json={"target": dst_folder}
        )
        if response.status_code >= 400:
            raise DaemonError(
                f"move: HTTP {response.status_code}: {response.text.strip()}",
                response.status_code,
            )

    async def send(self, account: str, request: SendRequest) -> None:
        """Hand a composed message to the daemon for delivery."""
        response = await self._http.post(
            f"/accounts/{_segment(account)}/send",
            json=request.to_dict(),
            timeout=SEND_TIMEOUT,
        )
        if response.status_code >= 400:
            raise DaemonError(
                f"send: HTTP {response.status_code}: {response.text.strip()}",
                response.status_code,
            )

    async def remove_account(self, account: str) -> None:
        """Deregister an account from the running daemon."""
        response = await self._http.delete(f"/accounts/{_segment(account)}")
        if response.status_code >= 400:
            raise DaemonError(
                f"remove account: HTTP {response.status_code}", response.status_code
            )

    async def stream_events(self) -> AsyncIterator[Event]:
        """Yield events from the daemon's event stream until it ends."""
        async with self._http.stream(
            "GET", "/events", timeout=httpx.Timeout(None)
        ) as response:
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    event = _parse_event(json.loads(line[len("data: "):]))
                except (ValueError, KeyError, TypeError):
                    continue
                yield event


def unix_client(socket_path: str) -> DaemonClient:
    """A client that reaches the daemon through its Unix socket."""
    return DaemonClient(DEFAULT_BASE_URL, httpx.AsyncHTTPTransport(uds=socket_path))