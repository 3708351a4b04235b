"""SQLite durable store for admins, auto-join channels and the message log."""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from loguru import logger

_SCHEMA = """
CREATE TABLE IF NOT EXISTS channels (
    channel_name TEXT PRIMARY KEY COLLATE NOCASE,
    auto_join INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS admins (
    nick TEXT PRIMARY KEY COLLATE NOCASE,
    granted_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS message_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_name TEXT COLLATE NOCASE NOT NULL,
    timestamp REAL NOT NULL,
    nick TEXT NOT NULL,
    message TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_message_log_channel_time
ON message_log (channel_name, timestamp DESC);
"""


@dataclass(frozen=True)
class LogEntry:
    """One persisted channel line."""

    channel: str
    nick: str
    message: str
    timestamp: float


class StoreBackend(Protocol):
    """Synchronous durable store. Every write is an atomic single-row upsert/delete."""

    def list_admins(self) -> list[tuple[str, float]]: ...
    def add_admin(self, nick: str, granted_at: float) -> bool: ...
    def remove_admin(self, nick: str) -> bool: ...
    def list_channels(self) -> list[str]: ...
    def add_channel(self, channel: str) -> bool: ...
    def remove_channel(self, channel: str) -> bool: ...
    def log_message(self, channel: str, nick: str, message: str, timestamp: float) -> None: ...
    def recent_messages(self, channel: str, limit: int) -> list[LogEntry]: ...


class SQLiteBackend:
    """
    sqlite3-backed store.

    Calls are synchronous; the async adapter runs them via asyncio.to_thread,
    so a single connection is shared across worker threads under a lock.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)
        logger.info(f"Database initialized at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _write(self, sql: str, params: tuple) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(sql, params)
            return cur.rowcount

    def _read(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # --- Admins ---

    def list_admins(self) -> list[tuple[str, float]]:
        return [(row[0], row[1]) for row in self._read("SELECT nick, granted_at FROM admins ORDER BY nick")]

    def add_admin(self, nick: str, granted_at: float | None = None) -> bool:
        granted = time.time() if granted_at is None else granted_at
        return self._write(
            "INSERT OR IGNORE INTO admins (nick, granted_at) VALUES (?, ?)", (nick, granted)
        ) > 0

    def remove_admin(self, nick: str) -> bool:
        return self._write("DELETE FROM admins WHERE nick = ?", (nick,)) > 0

    # --- Channels ---

    def list_channels(self) -> list[str]:
        rows = self._read("SELECT channel_name FROM channels WHERE auto_join = 1 ORDER BY channel_name")
        return [row[0] for row in rows]

    def add_channel(self, channel: str) -> bool:
        return self._write(
            "INSERT INTO channels (channel_name, auto_join) VALUES (?, 1) "
            "ON CONFLICT(channel_name) DO UPDATE SET auto_join = 1 WHERE auto_join = 0",
            (channel,),
        ) > 0

    def remove_channel(self, channel: str) -> bool:
        return self._write("DELETE FROM channels WHERE channel_name = ?", (channel,)) > 0

    # --- Message log ---

    def log_message(self, channel: str, nick: str, message: str, timestamp: float | None = None) -> None:
        ts = time.time() if timestamp is None else timestamp
        self._write(
            "INSERT INTO message_log (channel_name, timestamp, nick, message) VALUES (?, ?, ?, ?)",
            (channel, ts, nick, message),
        )

    def recent_messages(self, channel: str, limit: int) -> list[LogEntry]:
        rows = self._read(
            "SELECT timestamp, nick, message FROM ("
            "  SELECT id, timestamp, nick, message FROM message_log"
            "  WHERE channel_name = ? ORDER BY timestamp DESC, id DESC LIMIT ?"
            ") ORDER BY timestamp ASC, id ASC",
            (channel, limit),
        )
        return [LogEntry(channel=channel, nick=row[1], message=row[2], timestamp=row[0]) for row in rows]
