# whkmail

whkmail is the engine behind a terminal mail reader. It keeps a local
SQLite cache of folders and messages, serves that cache through a small
HTTP API on a Unix socket, offers an async client for that API, and hands
composed messages to an SMTP submission server authenticated with XOAUTH2.

It is a library: you wire a store, a mail provider and a sender together
in your own program and talk to the running daemon with the bundled client.

## Modules

| Module | Purpose |
| --- | --- |
| `whkmail.models` | `Message`, `Folder`, `AccountStatus`, `StatusResponse`, `MessagesResponse`, `MessageResponse` and `SendRequest`, each with `to_dict` / `from_dict`. `Store` is the protocol a cache backend follows. |
| `whkmail.sqlite_store` | `SQLiteStore`: batch upserts that report which rows were new, newest-first listing, live folder counts, per-folder UIDVALIDITY / UIDNEXT. Cached bodies survive header re-syncs. |
| `whkmail.outgoing` | `OutgoingMessage` renders a plain-text RFC 5322 message with threading headers and CRLF line endings; `generate_message_id`. |
| `whkmail.sender` | `SmtpSender` delivers an `OutgoingMessage` over STARTTLS, or implicit TLS on port 465, using `XOAuth2Auth`. Failures raise `SendError`. `bare_address` extracts the address part of `Name <addr>`. |
| `whkmail.state` | The account registry `State`, the `EventBus` with `Event` / `EventKind`, the body-fetch worker and the batching trash and delete workers. |
| `whkmail.handlers` | The HTTP routes (`build_app`) and `serve`, which listens on a Unix socket. |
| `whkmail.client` | `DaemonClient` for those routes, including the event stream; `unix_client` connects over the socket. Error statuses raise `DaemonError`. |
| `whkmail.config` | `FolderState` and the input style, kept in a JSON settings file that preserves fields it does not know. |
| `whkmail.drafts` | Saving, loading and deleting reply drafts keyed by the parent's Message-ID. |
| `whkmail.keymap` | `InputStyle` (vim / emacs), `Action`, and the key shown for each action. |
| `whkmail.textfmt` | Row formatting, truncation, padding and word wrapping for message lists and bodies. |

## Installing

Python 3.11 or later. The only dependencies are `aiohttp` and `httpx`;
`pip install whkmail[test]` adds pytest and pytest-asyncio.

## The cache

```python
from datetime import datetime, timezone

from whkmail.models import Folder, Message
from whkmail.sqlite_store import SQLiteStore

with SQLiteStore("mail.db") as store:
    store.upsert_folder(Folder(name="INBOX", delimiter="/"))
    inserted = store.upsert_messages([
        Message(uid=1, folder="INBOX", subject="Hello",
                sender="alice@example.com", to="bob@example.com",
                date=datetime(2024, 1, 2, tzinfo=timezone.utc), unread=True),
    ])
    print(inserted)                        # [True] for a new row
    for msg in store.list_messages("INBOX", 50):
        print(msg.uid, msg.subject)
    print(store.get_folder_sync("INBOX"))  # (0, 1) until update_folder_sync is called
```

`get_message` returns `None` when a message is not cached and includes the
body set with `set_body_text`. `list_folders` returns folders ordered by
name with live message and unread counts.

## Sending

```python
from whkmail.outgoing import OutgoingMessage
from whkmail.sender import SendError, SmtpSender

def fetch_token():
    return "token"   # return a fresh OAuth2 access token here

sender = SmtpSender("smtp.example.com", 587, "me@example.com", fetch_token)
message = OutgoingMessage(
    sender="me@example.com",
    to=["friend@example.com"],
    subject="Re: Lunch",
    body="Sounds good.\nSee you then.",
    in_reply_to="<parent@example.com>",
    references=["<root@example.com>", "<parent@example.com>"],
)
try:
    sender.send(message)
except SendError as exc:
    print("not sent:", exc)
```

A message with no `to` or `cc` recipients is refused before any connection
is made. An empty `sender` becomes the account address, and the Date and
Message-ID are filled in when left empty. `rfc5322()` returns exactly the
text sent in DATA.

## The daemon and its client

`State` holds one entry per account, registered with
`add_account(email, store, provider, sender=..., cancel=...)`. The store
follows `whkmail.state.MailStore`; the provider follows `MailProvider`,
whose methods are coroutines (`fetch_body`, `mark_read`, `trash_batch`,
`sync_folder`, `resolve_sent_folder`, ...); the sender has a synchronous
`send(OutgoingMessage)`, run in a worker thread.

`await serve(state, socket_path)` starts the workers and answers HTTP on
the Unix socket until cancelled:

- `GET /status` — every account, sorted by address, with its folders and whether it is syncing
- `GET /accounts/{account}/folders/{folder}/messages` — up to 200 cached headers
- `GET /accounts/{account}/folders/{folder}/messages/{uid}` — one message; a missing body is queued for fetching and a `body_ready` event follows
- `POST …/{uid}/read`, `/unread`, `/spam`, `/move` (JSON body `{"target": "<folder>"}`) — done straight away, 204
- `POST …/{uid}/trash`, `/delete` — queued, batched per folder in chunks of 100, removed from the cache at once, 202
- `POST /accounts/{account}/send` — 503 without a sender; on success the source and Sent folders are re-synced in the background
- `DELETE /accounts/{account}` — deregisters the account, calling its cancel function and closing store and provider
- `GET /events` — server-sent events (`sync_started`, `sync_done`, `body_ready`) with keep-alive pings

Unknown accounts give 404, a bad uid 400, a missing provider 503.

```python
from whkmail.client import DaemonError, unix_client

async def show_inbox(socket_path):
    async with unix_client(socket_path) as client:
        try:
            status = await client.status()
            for account in status.accounts:
                listing = await client.messages(account.account, "INBOX")
                print(account.account, listing.total)
        except DaemonError as exc:
            print("daemon said:", exc, exc.status)
```

`client.stream_events()` is an async iterator of `Event` objects.

## Settings and drafts

```python
from whkmail.config import FolderState, load_folder_states, save_folder_state
from whkmail.drafts import draft_key, load_draft, save_draft
from whkmail.keymap import Action, InputStyle
from whkmail.models import Message, SendRequest

save_folder_state("tui.json", "INBOX", FolderState.COMBINED)
print(load_folder_states("tui.json"))           # {'INBOX': <FolderState.COMBINED: 'combined'>}
print(InputStyle.EMACS.key(Action.MARK_READ))   # "!"

key = draft_key(Message(message_id="<parent@example.com>"))
save_draft("state", "me@example.com", key, SendRequest(subject="Re: Hi", body="draft"))
print(load_draft("state", "me@example.com", key).body)
```

A missing or malformed settings file gives the defaults: the vim input
style and no folder states. `load_draft` returns `None` when there is no
draft and raises `ValueError` for a malformed file; `delete_draft` does
nothing if the draft is already gone.

## What whkmail does not do

- It has no command-line program and no terminal screens; the key map,
  text formatting, settings and drafts are building blocks for one.
- It contains no IMAP client: the daemon relies on a `MailProvider` you
  supply for fetching bodies, flag changes, moves and folder syncing.
- It does not obtain OAuth2 tokens; `SmtpSender` calls the function you
  pass for each send.
- It does not choose file locations: the socket path, database path,
  settings file and draft directory are all given by the caller.