"""Durable admin/channel bookkeeping."""

from emulbot.store.admin import AdminStore
from emulbot.store.backend import LogEntry, SQLiteBackend, StoreBackend

__all__ = ["AdminStore", "LogEntry", "SQLiteBackend", "StoreBackend"]
