"""Admin/channel store adapter: in-memory authoritative view over a durable backend."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from loguru import logger

from emulbot.errors import StoreError, ValidationError
from emulbot.store.backend import LogEntry, StoreBackend
from emulbot.utils.helpers import irc_lower, is_valid_channel, is_valid_nick


@dataclass(frozen=True)
class AdminEntry:
    nickname: str
    granted_at: float


class AdminStore:
    """
    Write-through view of admins and auto-join channels.

    Every mutation validates, writes to the backend, and only then updates
    the in-memory sets. Adds and removes are set union/difference: redundant
    calls succeed as no-ops and return False.

    All mutations share one lock, so concurrent admin commands from
    different channels cannot lose updates.
    """

    def __init__(self, backend: StoreBackend):
        self.backend = backend
        self._admins: dict[str, AdminEntry] = {}
        self._channels: set[str] = set()
        self._lock = asyncio.Lock()

    @classmethod
    async def open(cls, backend: StoreBackend, initial_admin: str | None = None) -> "AdminStore":
        """Load the durable state and seed the bootstrap admin on an empty table."""
        store = cls(backend)
        await store.reload()
        if initial_admin and not store._admins:
            await store.add_admin(initial_admin)
            logger.info(f"Initial admin added: {initial_admin}")
        return store

    async def reload(self) -> None:
        async with self._lock:
            try:
                admins = await asyncio.to_thread(self.backend.list_admins)
                channels = await asyncio.to_thread(self.backend.list_channels)
            except Exception as e:
                raise StoreError(f"Failed to load store: {e}") from e
            self._admins = {irc_lower(nick): AdminEntry(irc_lower(nick), granted) for nick, granted in admins}
            self._channels = {irc_lower(ch) for ch in channels}

    # --- Queries ---

    def list_admins(self) -> set[str]:
        return set(self._admins)

    def admin_entries(self) -> list[AdminEntry]:
        return sorted(self._admins.values(), key=lambda e: e.nickname)

    def is_admin(self, nickname: str) -> bool:
        return bool(nickname) and irc_lower(nickname) in self._admins

    def list_channels(self) -> set[str]:
        return set(self._channels)

    # --- Mutations ---

    async def add_admin(self, nickname: str) -> bool:
        key = self._normalize_nick(nickname)
        async with self._lock:
            if key in self._admins:
                return False
            granted = time.time()
            await self._call(self.backend.add_admin, key, granted)
            self._admins[key] = AdminEntry(key, granted)
        logger.info(f"Admin added: {key}")
        return True

    async def remove_admin(self, nickname: str) -> bool:
        key = self._normalize_nick(nickname)
        async with self._lock:
            if key not in self._admins:
                return False
            await self._call(self.backend.remove_admin, key)
            self._admins.pop(key, None)
        logger.info(f"Admin removed: {key}")
        return True

    async def add_channel(self, channel: str) -> bool:
        key = self._normalize_channel(channel)
        async with self._lock:
            if key in self._channels:
                return False
            await self._call(self.backend.add_channel, key)
            self._channels.add(key)
        logger.info(f"Auto-join channel added: {key}")
        return True

    async def remove_channel(self, channel: str) -> bool:
        key = self._normalize_channel(channel)
        async with self._lock:
            if key not in self._channels:
                return False
            await self._call(self.backend.remove_channel, key)
            self._channels.discard(key)
        logger.info(f"Auto-join channel removed: {key}")
        return True

    # --- Message log (best effort, not part of the admin view) ---

    async def log_message(self, channel: str, nick: str, message: str, timestamp: float | None = None) -> None:
        ts = time.time() if timestamp is None else timestamp
        try:
            await asyncio.to_thread(self.backend.log_message, irc_lower(channel), nick, message, ts)
        except Exception as e:
            logger.error(f"Failed to log message for {channel}: {e}")

    async def recent_messages(self, channel: str, limit: int) -> list[LogEntry]:
        try:
            return await asyncio.to_thread(self.backend.recent_messages, irc_lower(channel), limit)
        except Exception as e:
            logger.error(f"Failed to read message log for {channel}: {e}")
            return []

    # --- Internals ---

    @staticmethod
    def _normalize_nick(nickname: str) -> str:
        nick = (nickname or "").strip()
        if not is_valid_nick(nick):
            raise ValidationError(f"'{nickname}' is not a valid nickname")
        return irc_lower(nick)

    @staticmethod
    def _normalize_channel(channel: str) -> str:
        name = (channel or "").strip()
        if not is_valid_channel(name):
            raise ValidationError(f"'{channel}' is not a valid channel name")
        return irc_lower(name)

    @staticmethod
    async def _call(fn, *args) -> None:
        try:
            await asyncio.to_thread(fn, *args)
        except Exception as e:
            logger.error(f"Store write failed ({getattr(fn, '__name__', fn)}): {e}")
            raise StoreError(str(e)) from e
