"""SQLite-backed implementation of the message and folder cache."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from whkmail.models import Folder, Message

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    uid       INTEGER NOT NULL,
    folder    TEXT    NOT NULL,
    subject   TEXT    NOT NULL DEFAULT '',
    from_addr TEXT    NOT NULL DEFAULT '',
    to_addr   TEXT    NOT NULL DEFAULT '',
    date      INTEGER NOT NULL DEFAULT 0,
    unread    INTEGER NOT NULL DEFAULT 1,
    flagged   INTEGER NOT NULL DEFAULT 0,
    draft     INTEGER NOT NULL DEFAULT 0,
    body_text TEXT    NOT NULL DEFAULT '',
    PRIMARY KEY (folder, uid)
);
CREATE INDEX IF NOT EXISTS idx_messages_folder_date ON messages (folder, date DESC);
CREATE TABLE IF NOT EXISTS folders (
    name         TEXT    PRIMARY KEY,
    delimiter    TEXT    NOT NULL DEFAULT '',
    uid_validity INTEGER NOT NULL DEFAULT 0,
    uid_next     INTEGER NOT NULL DEFAULT 1
);
"""

# Column additions for databases created before these columns existed.
_MIGRATIONS = (
    "ALTER TABLE folders ADD COLUMN uid_validity INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE folders ADD COLUMN uid_next INTEGER NOT NULL DEFAULT 1",
    "ALTER TABLE messages ADD COLUMN draft INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE messages ADD COLUMN body_fetched INTEGER NOT NULL DEFAULT 0",
    "ALTER TABLE messages ADD COLUMN message_id TEXT NOT NULL DEFAULT ''",
    "ALTER TABLE messages ADD COLUMN in_reply_to TEXT NOT NULL DEFAULT ''",
    "ALTER TABLE messages ADD COLUMN answered INTEGER NOT NULL DEFAULT 0",
)

_INSERT_IGNORE = """
    INSERT OR IGNORE INTO messages
      (uid, folder, subject, from_addr, to_addr, date, unread, flagged, answered, draft,
       body_text, message_id, in_reply_to)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

_UPDATE_HEADERS = """
    UPDATE messages SET
      subject=?, from_addr=?, to_addr=?, date=?,
      unread=?, flagged=?, answered=?, draft=?
    WHERE folder=? AND uid=?"""

_LIST_COLUMNS = (
    "uid, folder, subject, from_addr, to_addr, date, unread, flagged, answered, draft, "
    "message_id, in_reply_to"
)
_GET_COLUMNS = (
    "uid, folder, subject, from_addr, to_addr, date, unread, flagged, answered, draft, "
    "body_text, body_fetched, message_id, in_reply_to"
)


def _timestamp(when: datetime) -> int:
    return int(when.timestamp())


def _row_to_message(row: sqlite3.Row) -> Message:
    keys = row.keys()
    return Message(
        uid=row["uid"],
        folder=row["folder"],
        subject=row["subject"],
        sender=row["from_addr"],
        to=row["to_addr"],
        date=datetime.fromtimestamp(row["date"], timezone.utc),
        unread=row["unread"] == 1,
        flagged=row["flagged"] == 1,
        answered=row["answered"] == 1,
        draft=row["draft"] == 1,
        body_text=row["body_text"] if "body_text" in keys else "",
        body_fetched=("body_fetched" in keys and row["body_fetched"] == 1),
        message_id=row["message_id"],
        in_reply_to=row["in_reply_to"],
    )


class SQLiteStore:
    """Message and folder cache stored in one SQLite database."""

    def __init__(self, path: str) -> None:
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._migrate()
        except sqlite3.Error:
            self._conn.close()
            raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _migrate(self) -> None:
        self._conn.executescript(_SCHEMA)
        for stmt in _MIGRATIONS:
            try:
                self._conn.execute(stmt)
            except sqlite3.OperationalError as exc:
                if "duplicate column name" not in str(exc):
                    raise sqlite3.OperationalError(f"migrate: {exc}") from exc
        self._conn.commit()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> None:
        with self._lock, self._conn:
            self._conn.execute(sql, tuple(params))

    def upsert_message(self, message: Message) -> bool:
        """Insert or update headers; True only when a new row was created."""
        return self.upsert_messages([message])[0]

    def upsert_messages(self, messages: list[Message]) -> list[bool]:
        """Write a batch in one transaction; cached bodies are never touched on update."""
        if not messages:
            return []
        inserted: list[bool] = []
        with self._lock, self._conn:
            for m in messages:
                ts = _timestamp(m.date)
                cur = self._conn.execute(
                    _INSERT_IGNORE,
                    (
                        m.uid, m.folder, m.subject, m.sender, m.to, ts,
                        int(m.unread), int(m.flagged), int(m.answered), int(m.draft),
                        m.body_text, m.message_id, m.in_reply_to,
                    ),
                )
                if cur.rowcount == 1:
                    inserted.append(True)
                    continue
                self._conn.execute(
                    _UPDATE_HEADERS,
                    (
                        m.subject, m.sender, m.to, ts,
                        int(m.unread), int(m.flagged), int(m.answered), int(m.draft),
                        m.folder, m.uid,
                    ),
                )
                inserted.append(False)
        return inserted

    def list_messages(self, folder: str, limit: int) -> list[Message]:
        """The most recent messages of a folder, newest first, without bodies."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_LIST_COLUMNS} FROM messages WHERE folder = ? "
                "ORDER BY date DESC LIMIT ?",
                (folder, limit),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def get_message(self, folder: str, uid: int) -> Message | None:
        """One message including its body, or None when not cached."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_GET_COLUMNS} FROM messages WHERE folder = ? AND uid = ?",
                (folder, uid),
            ).fetchone()
        return None if row is None else _row_to_message(row)

    def upsert_folder(self, folder: Folder) -> None:
        """Insert a folder or update its delimiter."""
        self._execute(
            "INSERT INTO folders (name, delimiter) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET delimiter=excluded.delimiter",
            (folder.name, folder.delimiter),
        )

    def list_folders(self) -> list[Folder]:
        """All folders ordered by name, with live message and unread counts."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT f.name, f.delimiter,
                       COUNT(m.uid)               AS message_count,
                       COALESCE(SUM(m.unread), 0) AS unread
                FROM folders f
                LEFT JOIN messages m ON m.folder = f.name
                GROUP BY f.name, f.delimiter
                ORDER BY f.name
                """
            ).fetchall()
        return [
            Folder(
                name=row["name"],
                delimiter=row["delimiter"],
                message_count=row["message_count"],
                unread=row["unread"],
            )
            for row in rows
        ]

    def set_body_text(self, folder: str, uid: int, body: str) -> None:
        """Cache a fetched body and mark it as fetched."""
        self._execute(
            "UPDATE messages SET body_text = ?, body_fetched = 1 WHERE folder = ? AND uid = ?",
            (body, folder, uid),
        )

    def mark_seen(self, folder: str, uid: int) -> None:
        """Mark a cached message read."""
        self._execute(
            "UPDATE messages SET unread = 0 WHERE folder = ? AND uid = ?", (folder, uid)
        )

    def mark_unseen(self, folder: str, uid: int) -> None:
        """Mark a cached message unread."""
        self._execute(
            "UPDATE messages SET unread = 1 WHERE folder = ? AND uid = ?", (folder, uid)
        )

    def delete_message(self, folder: str, uid: int) -> None:
        """Remove one cached message."""
        self._execute("DELETE FROM messages WHERE folder = ? AND uid = ?", (folder, uid))

    def get_folder_sync(self, folder: str) -> tuple[int, int]:
        """Stored (UIDVALIDITY, UIDNEXT); (0, 1) when the folder is unknown."""
        with self._lock:
            row = self._conn.execute(
                "SELECT uid_validity, uid_next FROM folders WHERE name = ?", (folder,)
            ).fetchone()
        if row is None:
            return 0, 1
        return row["uid_validity"], row["uid_next"]

    def update_folder_sync(self, folder: str, uid_validity: int, uid_next: int) -> None:
        """Persist the UIDVALIDITY and UIDNEXT seen at the end of a sync pass."""
        self._execute(
            "UPDATE folders SET uid_validity = ?, uid_next = ? WHERE name = ?",
            (uid_validity, uid_next, folder),
        )

    def delete_folder_messages(self, folder: str) -> None:
        """Drop every cached message of a folder."""
        self._execute("DELETE FROM messages WHERE folder = ?", (folder,))