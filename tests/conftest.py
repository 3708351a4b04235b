import pytest

from emulbot.store.admin import AdminStore
from emulbot.store.backend import LogEntry


class MemoryBackend:
    """In-memory StoreBackend that counts writes and can be told to fail."""

    def __init__(self):
        self.admins: dict[str, float] = {}
        self.channels: set[str] = set()
        self.log: list[LogEntry] = []
        self.writes = 0
        self.fail = False

    def _check(self):
        self.writes += 1
        if self.fail:
            raise OSError("disk on fire")

    def list_admins(self):
        return list(self.admins.items())

    def add_admin(self, nick, granted_at):
        self._check()
        self.admins[nick] = granted_at
        return True

    def remove_admin(self, nick):
        self._check()
        return self.admins.pop(nick, None) is not None

    def list_channels(self):
        return sorted(self.channels)

    def add_channel(self, channel):
        self._check()
        self.channels.add(channel)
        return True

    def remove_channel(self, channel):
        self._check()
        self.channels.discard(channel)
        return True

    def log_message(self, channel, nick, message, timestamp):
        if self.fail:
            raise OSError("disk on fire")
        self.log.append(LogEntry(channel, nick, message, timestamp))

    def recent_messages(self, channel, limit):
        rows = [e for e in self.log if e.channel == channel]
        return rows[-limit:]


@pytest.fixture
def backend():
    """Fresh in-memory store backend."""
    return MemoryBackend()


@pytest.fixture
async def store(backend):
    """AdminStore over the in-memory backend, seeded with Baughn."""
    return await AdminStore.open(backend, "Baughn")
