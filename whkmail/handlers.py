"""HTTP routes of the daemon, served over a Unix socket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from aiohttp import web

from whkmail.models import MessageResponse, MessagesResponse, SendRequest, StatusResponse
from whkmail.models import AccountStatus
from whkmail.outgoing import OutgoingMessage
from whkmail.state import (
    MAX_REQUEST_BODY_SIZE,
    OP_REQUEST_TIMEOUT,
    SEND_TIMEOUT,
    SHUTDOWN_GRACE,
    SSE_KEEPALIVE_INTERVAL,
    AccountState,
    MailProvider,
    State,
    UnknownAccountError,
)

log = logging.getLogger(__name__)

STATE_KEY = web.AppKey("state", State)
_TASKS_KEY = web.AppKey("background_tasks", set)

# Most messages returned for one folder listing.
MESSAGE_LIST_LIMIT = 200

_UID_PATTERN = re.compile(r"[0-9]+")
_MAX_UID = 0xFFFFFFFF

_PATH_MESSAGES = "/accounts/{account}/folders/{folder}/messages"
_PATH_MESSAGE = _PATH_MESSAGES + "/{uid}"


def build_app(state: State) -> web.Application:
    """An application with every daemon route mounted on it."""
    app = web.Application(client_max_size=MAX_REQUEST_BODY_SIZE)
    app[STATE_KEY] = state
    app[_TASKS_KEY] = set()
    app.on_cleanup.append(_cancel_background_tasks)
    app.router.add_get("/status", handle_status)
    app.router.add_get(_PATH_MESSAGES, handle_messages)
    app.router.add_get(_PATH_MESSAGE, handle_message)
    app.router.add_post(_PATH_MESSAGE + "/read", handle_mark_read)
    app.router.add_post(_PATH_MESSAGE + "/unread", handle_mark_unread)
    app.router.add_post(_PATH_MESSAGE + "/trash", handle_trash)
    app.router.add_post(_PATH_MESSAGE + "/delete", handle_permanent_delete)
    app.router.add_post(_PATH_MESSAGE + "/move", handle_move)
    app.router.add_post(_PATH_MESSAGE + "/spam", handle_mark_spam)
    app.router.add_post("/accounts/{account}/send", handle_send)
    app.router.add_delete("/accounts/{account}", handle_remove_account)
    app.router.add_get("/events", handle_events)
    return app


async def _cancel_background_tasks(app: web.Application) -> None:
    tasks = list(app[_TASKS_KEY])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _spawn(app: web.Application, coro: Coroutine[Any, Any, None]) -> None:
    tasks = app[_TASKS_KEY]
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)


def _message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _json_response(payload: dict[str, Any]) -> web.Response:
    try:
        body = json.dumps(payload).encode("utf-8")
    except (TypeError, ValueError):
        return web.Response(status=500, text="internal error: failed to encode response")
    return web.Response(body=body, content_type="application/json")


def _account(request: web.Request) -> AccountState:
    account = request.app[STATE_KEY].lookup_account(request.match_info["account"])
    if account is None:
        raise web.HTTPNotFound(text="unknown account")
    return account


def _provider(account: AccountState) -> MailProvider:
    if account.provider is None:
        raise web.HTTPServiceUnavailable(text="no provider")
    return account.provider


def _uid(request: web.Request) -> int:
    raw = request.match_info["uid"]
    if _UID_PATTERN.fullmatch(raw) is None or int(raw) > _MAX_UID:
        raise web.HTTPBadRequest(text="invalid uid")
    return int(raw)


async def _read_json(request: web.Request) -> Any:
    try:
        raw = await request.read()
    except web.HTTPRequestEntityTooLarge as exc:
        raise ValueError("request body too large") from exc
    return json.loads(raw)


def _drop_cached(account: AccountState, folder: str, uid: int, where: str) -> None:
    try:
        account.store.delete_message(folder, uid)
    except Exception as exc:  # noqa: BLE001 - the remote operation already succeeded
        log.warning("%s: delete from store account=%s folder=%s uid=%s: %s",
                    where, account.email, folder, uid, exc)


async def handle_status(request: web.Request) -> web.Response:
    """Every registered account with its folders and sync state, sorted by address."""
    statuses: list[AccountStatus] = []
    for account in request.app[STATE_KEY].snapshot_accounts():
        try:
            folders = account.store.list_folders()
        except Exception as exc:  # noqa: BLE001 - reported to the caller
            return web.Response(status=500, text=_message(exc))
        statuses.append(AccountStatus(account=account.email, syncing=account.syncing,
                                      folders=list(folders or [])))
    statuses.sort(key=lambda status: status.account)
    return _json_response(StatusResponse(accounts=statuses).to_dict())


async def handle_messages(request: web.Request) -> web.Response:
    """The cached header list of a folder, newest first."""
    account = _account(request)
    folder = request.match_info["folder"]
    try:
        messages = list(account.store.list_messages(folder, MESSAGE_LIST_LIMIT) or [])
    except Exception as exc:  # noqa: BLE001 - reported to the caller
        return web.Response(status=500, text=_message(exc))
    return _json_response(
        MessagesResponse(folder=folder, messages=messages, total=len(messages)).to_dict()
    )


async def handle_message(request: web.Request) -> web.Response:
    """One cached message; queues a background body fetch when the body is missing."""
    account = _account(request)
    folder = request.match_info["folder"]
    uid = _uid(request)
    try:
        message = account.store.get_message(folder, uid)
    except Exception as exc:  # noqa: BLE001 - reported to the caller
        return web.Response(status=500, text=_message(exc))
    if message is None:
        raise web.HTTPNotFound(text="404 page not found")
    if not message.body_fetched and account.provider is not None:
        request.app[STATE_KEY].enqueue_body_fetch(account.email, folder, uid)
    return _json_response(MessageResponse(message=message).to_dict())


async def _mutate(
    request: web.Request,
    op: Callable[[MailProvider, str, int], Awaitable[None]],
) -> web.Response:
    account = _account(request)
    provider = _provider(account)
    folder = request.match_info["folder"]
    uid = _uid(request)
    try:
        await asyncio.wait_for(op(provider, folder, uid), OP_REQUEST_TIMEOUT)
    except Exception as exc:  # noqa: BLE001 - reported to the caller
        return web.Response(status=500, text=_message(exc))
    return web.Response(status=204)


async def handle_mark_read(request: web.Request) -> web.Response:
    """Flag a message as seen on the server."""
    return await _mutate(request, lambda provider, folder, uid: provider.mark_read(folder, uid))


async def handle_mark_unread(request: web.Request) -> web.Response:
    """Clear the seen flag of a message on the server."""
    return await _mutate(request, lambda provider, folder, uid: provider.mark_unread(folder, uid))


async def handle_mark_spam(request: web.Request) -> web.Response:
    """Move a message into the account's spam mailbox."""
    return await _mutate(request, lambda provider, folder, uid: provider.mark_spam(folder, uid))


async def _enqueue_mutation(
    request: web.Request,
    enqueue: Callable[[State, str, str, int], Awaitable[None]],
    where: str,
) -> web.Response:
    account = _account(request)
    _provider(account)
    folder = request.match_info["folder"]
    uid = _uid(request)
    try:
        await enqueue(request.app[STATE_KEY], account.email, folder, uid)
    except Exception as exc:  # noqa: BLE001 - reported to the caller
        return web.Response(status=503, text="queue full: " + _message(exc))
    # Drop the cached row now so a concurrent sync cannot resurrect it.
    _drop_cached(account, folder, uid, where)
    return web.Response(status=202)


async def handle_trash(request: web.Request) -> web.Response:
    """Queue a message for trashing and remove it from the cache; 202 on success."""
    return await _enqueue_mutation(request, State.enqueue_trash, "trash")


async def handle_permanent_delete(request: web.Request) -> web.Response:
    """Queue a message for expunging and remove it from the cache; 202 on success."""
    return await _enqueue_mutation(request, State.enqueue_permanent_delete, "delete")


async def handle_move(request: web.Request) -> web.Response:
    """Move a message to the folder named by the JSON body {"target": ...}."""
    account = _account(request)
    provider = _provider(account)
    folder = request.match_info["folder"]
    uid = _uid(request)
    try:
        data = await _read_json(request)
    except ValueError:
        data = None
    target = data.get("target") if isinstance(data, dict) else None
    if not isinstance(target, str) or not target:
        return web.Response(status=400, text='invalid body: expected {"target":"<folder>"}')
    try:
        await asyncio.wait_for(provider.move_to_folder(folder, target, uid), OP_REQUEST_TIMEOUT)
    except Exception as exc:  # noqa: BLE001 - reported to the caller
        return web.Response(status=500, text=_message(exc))
    _drop_cached(account, folder, uid, "move")
    return web.Response(status=204)


def _decode_send_request(data: Any) -> SendRequest:
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    for key in ("to", "cc", "references"):
        value = data.get(key)
        if value is not None and not (
            isinstance(value, list) and all(isinstance(item, str) for item in value)
        ):
            raise ValueError(f"field {key!r} must be a list of strings")
    for key in ("subject", "body", "in_reply_to", "source_folder"):
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"field {key!r} must be a string")
    return SendRequest.from_dict({k: v for k, v in data.items() if v is not None})


async def handle_send(request: web.Request) -> web.Response:
    """Deliver a composed message, then re-sync the affected folders in the background."""
    account = _account(request)
    if account.sender is None:
        return web.Response(status=503, text="no sender configured")
    try:
        send_request = _decode_send_request(await _read_json(request))
    except ValueError as exc:
        return web.Response(status=400, text="invalid body: " + _message(exc))
    message = OutgoingMessage(
        sender=account.email,
        to=send_request.to,
        cc=send_request.cc,
        subject=send_request.subject,
        body=send_request.body,
        in_reply_to=send_request.in_reply_to,
        references=send_request.references,
    )
    try:
        await asyncio.wait_for(asyncio.to_thread(account.sender.send, message), SEND_TIMEOUT)
    except Exception as exc:  # noqa: BLE001 - reported to the caller
        return web.Response(status=500, text=_message(exc))
    _spawn(request.app, _resync_after_send(account, send_request.source_folder))
    return web.Response(status=204)


async def _resync_after_send(account: AccountState, source_folder: str) -> None:
    provider = account.provider
    if provider is None:
        return
    try:
        async with asyncio.timeout(SEND_TIMEOUT):
            if source_folder:
                try:
                    await provider.sync_folder(source_folder)
                except Exception as exc:  # noqa: BLE001 - the send already succeeded
                    log.warning("post-send source sync account=%s folder=%s: %s",
                                account.email, source_folder, exc)
            try:
                sent = await provider.resolve_sent_folder()
            except Exception as exc:  # noqa: BLE001 - the send already succeeded
                log.warning("post-send: resolve sent folder account=%s: %s", account.email, exc)
                return
            try:
                await provider.sync_folder(sent)
            except Exception as exc:  # noqa: BLE001 - the send already succeeded
                log.warning("post-send sent sync account=%s folder=%s: %s",
                            account.email, sent, exc)
    except TimeoutError:
        log.warning("post-send resync timed out account=%s", account.email)


async def handle_remove_account(request: web.Request) -> web.Response:
    """Stop an account and drop it from the running daemon."""
    try:
        request.app[STATE_KEY].remove_account(request.match_info["account"])
    except UnknownAccountError as exc:
        return web.Response(status=404, text=str(exc))
    return web.Response(status=204)


async def handle_events(request: web.Request) -> web.StreamResponse:
    """Stream bus events as server-sent events, with periodic keepalive comments."""
    state = request.app[STATE_KEY]
    queue = state.bus.subscribe(32)
    response = web.StreamResponse(headers={
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
    })
    try:
        await response.prepare(request)
        loop = asyncio.get_running_loop()
        next_ping = loop.time() + SSE_KEEPALIVE_INTERVAL
        while True:
            remaining = max(next_ping - loop.time(), 0.0)
            try:
                event = await asyncio.wait_for(queue.get(), remaining)
            except TimeoutError:
                await response.write(b": ping\n\n")
                next_ping = loop.time() + SSE_KEEPALIVE_INTERVAL
                continue
            payload = json.dumps(event.to_dict()).encode("utf-8")
            await response.write(b"data: " + payload + b"\n\n")
    except ConnectionError:
        pass
    finally:
        state.bus.unsubscribe(queue)
    return response


def _remove_socket(socket_path: str) -> None:
    try:
        os.remove(socket_path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        log.warning("remove socket: %s", exc)


async def serve(state: State, socket_path: str) -> None:
    """Run the workers and serve on the Unix socket until cancelled."""
    with contextlib.suppress(OSError):
        os.remove(socket_path)
    runner = web.AppRunner(build_app(state), handler_cancellation=True,
                           shutdown_timeout=SHUTDOWN_GRACE)
    workers: list[asyncio.Task[None]] = []
    try:
        workers = [
            asyncio.create_task(coro)
            for coro in (
                state.track_sync_state(),
                state.worker(),
                state.trash_worker(),
                state.permanent_delete_worker(),
            )
        ]
        await runner.setup()
        site = web.UnixSite(runner, socket_path)
        await site.start()
        log.info("daemon listening socket=%s", socket_path)
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        _remove_socket(socket_path)