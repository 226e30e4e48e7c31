"""Daemon runtime state: the account registry, the event bus and background workers."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from whkmail.models import Folder, Message
from whkmail.outgoing import OutgoingMessage

log = logging.getLogger(__name__)

# Bound for one-shot provider operations started from an HTTP handler.
OP_REQUEST_TIMEOUT = 30.0
# Bound for one background body fetch; bodies can be multi-MB.
BODY_FETCH_TIMEOUT = 60.0
# Bound for SMTP submission and the post-send folder re-sync.
SEND_TIMEOUT = 120.0
# How long the server waits for in-flight handlers on shutdown.
SHUTDOWN_GRACE = 5.0
# How often the event stream sends a keepalive comment.
SSE_KEEPALIVE_INTERVAL = 20.0
# Cap on the body of mutating requests.
MAX_REQUEST_BODY_SIZE = 1 << 20

# Most UIDs sent in one batched move or expunge.
TRASH_BATCH_SIZE = 100
# Depth of the pending trash and delete queues; gives backpressure when full.
MUTATION_QUEUE_DEPTH = 256
# Depth of the body-fetch queue; extra requests are dropped.
JOB_QUEUE_DEPTH = 64
# Window in which further batch jobs are collected after the first arrives.
DRAIN_WINDOW = 0.1


class EventKind(StrEnum):
    """Kinds of events published on the bus."""

    SYNC_STARTED = "sync_started"
    SYNC_DONE = "sync_done"
    BODY_READY = "body_ready"


@dataclass(frozen=True)
class Event:
    """One notification for subscribers such as the event stream."""

    kind: EventKind
    account: str = ""
    folder: str = ""
    uid: int = 0
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "account": self.account,
            "folder": self.folder,
            "uid": self.uid,
            "reason": self.reason,
        }


def body_ready_event(account: str, folder: str, uid: int, reason: str) -> Event:
    """Event announcing that a body fetch finished; reason is empty on success."""
    return Event(EventKind.BODY_READY, account=account, folder=folder, uid=uid, reason=reason)


class EventBus:
    """Fan-out of events to bounded subscriber queues; slow subscribers miss events."""

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[Event]] = []
        self._lock = threading.Lock()

    def subscribe(self, buffer: int) -> asyncio.Queue[Event]:
        """Register a new subscriber queue holding at most buffer events."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=buffer)
        with self._lock:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[Event]) -> None:
        """Stop delivering events to queue; unknown queues are ignored."""
        with self._lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def publish(self, event: Event) -> None:
        """Deliver event to every subscriber that has room for it."""
        with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning("event bus: subscriber full, dropping %s", event.kind.value)


class MailStore(Protocol):
    """The part of the cache the HTTP handlers need."""

    def list_folders(self) -> list[Folder]: ...

    def list_messages(self, folder: str, limit: int) -> list[Message]: ...

    def get_message(self, folder: str, uid: int) -> Message | None: ...

    def delete_message(self, folder: str, uid: int) -> None: ...


class MailProvider(Protocol):
    """Protocol-agnostic access to the remote mailbox."""

    async def fetch_body(self, folder: str, uid: int) -> str: ...

    async def mark_read(self, folder: str, uid: int) -> None: ...

    async def mark_unread(self, folder: str, uid: int) -> None: ...

    async def move_to_folder(self, src_folder: str, dst_folder: str, uid: int) -> None: ...

    async def trash(self, folder: str, uid: int) -> None: ...

    async def trash_batch(self, folder: str, uids: list[int]) -> None: ...

    async def permanent_delete_batch(self, folder: str, uids: list[int]) -> None: ...

    async def permanent_delete(self, folder: str, uid: int) -> None: ...

    async def sync_folder(self, folder: str) -> None: ...

    async def resolve_sent_folder(self) -> str: ...

    async def mark_spam(self, folder: str, uid: int) -> None: ...


class MailSender(Protocol):
    """Outbound delivery for one account."""

    def send(self, message: OutgoingMessage) -> None: ...


@dataclass
class AccountState:
    """Runtime state of one registered account."""

    email: str
    store: MailStore
    provider: MailProvider | None = None
    sender: MailSender | None = None
    syncing: bool = False
    cancel: Callable[[], None] | None = None


class UnknownAccountError(LookupError):
    """Raised when an account is not registered."""

    def __init__(self, email: str) -> None:
        super().__init__(f"unknown account: {email}")
        self.email = email


@dataclass(frozen=True)
class _Job:
    account: str
    folder: str
    uid: int


@dataclass
class _Batch:
    groups: dict[tuple[str, str], list[int]] = field(default_factory=dict)

    def add(self, job: _Job) -> None:
        self.groups.setdefault((job.account, job.folder), []).append(job.uid)


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class State:
    """Registry of accounts plus the queues shared by handlers and workers."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self._lock = threading.RLock()
        self._accounts: dict[str, AccountState] = {}
        self.jobs: asyncio.Queue[_Job] = asyncio.Queue(maxsize=JOB_QUEUE_DEPTH)
        self.trash_jobs: asyncio.Queue[_Job] = asyncio.Queue(maxsize=MUTATION_QUEUE_DEPTH)
        self.delete_jobs: asyncio.Queue[_Job] = asyncio.Queue(maxsize=MUTATION_QUEUE_DEPTH)

    def add_account(
        self,
        email: str,
        store: MailStore,
        provider: MailProvider | None,
        *,
        sender: MailSender | None = None,
        cancel: Callable[[], None] | None = None,
    ) -> AccountState:
        """Register an account, replacing any earlier one with the same address."""
        account = AccountState(email=email, store=store, provider=provider,
                               sender=sender, cancel=cancel)
        with self._lock:
            self._accounts[email] = account
        return account

    def remove_account(self, email: str) -> None:
        """Stop and deregister an account, closing its store and provider if they can be."""
        with self._lock:
            account = self._accounts.pop(email, None)
        if account is None:
            raise UnknownAccountError(email)
        if account.cancel is not None:
            account.cancel()
        for label, resource in (("store", account.store), ("provider", account.provider)):
            close = getattr(resource, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as exc:  # noqa: BLE001 - closing is best effort
                    log.warning("close account %s for %s: %s", label, email, exc)

    def lookup_account(self, email: str) -> AccountState | None:
        """The registered account for email, or None."""
        with self._lock:
            return self._accounts.get(email)

    def snapshot_accounts(self) -> list[AccountState]:
        """A copy of the registered accounts, safe to iterate during I/O."""
        with self._lock:
            return list(self._accounts.values())

    async def track_sync_state(self) -> None:
        """Keep each account's syncing flag in step with sync events until cancelled."""
        queue = self.bus.subscribe(32)
        try:
            while True:
                event = await queue.get()
                account = self.lookup_account(event.account)
                if account is None:
                    continue
                if event.kind is EventKind.SYNC_STARTED:
                    account.syncing = True
                elif event.kind is EventKind.SYNC_DONE:
                    account.syncing = False
        finally:
            self.bus.unsubscribe(queue)

    async def worker(self) -> None:
        """Fetch queued bodies and publish a body-ready event for each until cancelled."""
        while True:
            job = await self.jobs.get()
            self.bus.publish(await self.run_body_fetch(job.account, job.folder, job.uid))

    async def run_body_fetch(self, account: str, folder: str, uid: int) -> Event:
        """Fetch one body; always returns the event to publish, with a reason on failure."""
        reason = ""
        state = self.lookup_account(account)
        if state is None:
            reason = "unknown account"
        elif state.provider is None:
            reason = "no provider configured"
        else:
            try:
                await asyncio.wait_for(state.provider.fetch_body(folder, uid), BODY_FETCH_TIMEOUT)
            except Exception as exc:  # noqa: BLE001 - reported to the subscriber
                log.warning("worker: fetch body account=%s uid=%s: %s", account, uid, exc)
                reason = _reason(exc)
        return body_ready_event(account, folder, uid, reason)

    def enqueue_body_fetch(self, account: str, folder: str, uid: int) -> bool:
        """Queue a body fetch; returns False and drops it when the queue is full."""
        try:
            self.jobs.put_nowait(_Job(account, folder, uid))
        except asyncio.QueueFull:
            log.warning("job queue full, dropping fetch account=%s uid=%s", account, uid)
            return False
        return True

    async def trash_worker(self) -> None:
        """Drain the trash queue, moving UIDs to the trash in batches."""

        async def process(account: AccountState, folder: str, chunk: list[int]) -> None:
            assert account.provider is not None
            try:
                await asyncio.wait_for(account.provider.trash_batch(folder, chunk),
                                       OP_REQUEST_TIMEOUT)
            except Exception as exc:  # noqa: BLE001 - background work is logged
                log.warning("trash worker account=%s folder=%s count=%d: %s",
                            account.email, folder, len(chunk), exc)

        await batch_worker(self.trash_jobs, TRASH_BATCH_SIZE, process, self.lookup_account)

    async def permanent_delete_worker(self) -> None:
        """Drain the delete queue, expunging UIDs in batches."""

        async def process(account: AccountState, folder: str, chunk: list[int]) -> None:
            assert account.provider is not None
            try:
                await asyncio.wait_for(account.provider.permanent_delete_batch(folder, chunk),
                                       OP_REQUEST_TIMEOUT)
            except Exception as exc:  # noqa: BLE001 - background work is logged
                log.warning("delete worker account=%s folder=%s count=%d: %s",
                            account.email, folder, len(chunk), exc)

        await batch_worker(self.delete_jobs, TRASH_BATCH_SIZE, process, self.lookup_account)

    async def enqueue_trash(self, account: str, folder: str, uid: int) -> None:
        """Queue a message for trashing, waiting for room when the queue is full."""
        await self.trash_jobs.put(_Job(account, folder, uid))

    async def enqueue_permanent_delete(self, account: str, folder: str, uid: int) -> None:
        """Queue a message for expunging, waiting for room when the queue is full."""
        await self.delete_jobs.put(_Job(account, folder, uid))


async def batch_worker(
    queue: asyncio.Queue[_Job],
    chunk_size: int,
    process: Callable[[AccountState, str, list[int]], Awaitable[None]],
    lookup: Callable[[str], AccountState | None],
) -> None:
    """Collect jobs arriving within a short window, group them by account and
    folder, and hand each group to process in chunks of at most chunk_size."""
    while True:
        batch = _Batch()
        batch.add(await queue.get())
        deadline = time.monotonic() + DRAIN_WINDOW
        while (remaining := deadline - time.monotonic()) > 0:
            try:
                batch.add(await asyncio.wait_for(queue.get(), remaining))
            except TimeoutError:
                break

        for (account_email, folder), uids in batch.groups.items():
            account = lookup(account_email)
            if account is None or account.provider is None:
                continue
            for start in range(0, len(uids), chunk_size):
                await process(account, folder, uids[start:start + chunk_size])