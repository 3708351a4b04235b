"""Per-channel bounded ring of recent messages."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Iterable

from emulbot.utils.helpers import irc_lower


@dataclass(frozen=True)
class Message:
    """One observed channel line. Immutable once appended."""

    channel: str
    sender: str
    body: str
    timestamp: float


class ContextBuffer:
    """
    Bounded FIFO history per channel.

    Appends are O(1) and evict the oldest entry at capacity. Timestamps are
    kept non-decreasing: a message older than the newest one is clamped
    forward rather than reordered. Unknown channels are created lazily.
    """

    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._channels: dict[str, deque[Message]] = {}

    def _ring(self, channel: str) -> deque[Message]:
        key = irc_lower(channel)
        ring = self._channels.get(key)
        if ring is None:
            ring = deque(maxlen=self.capacity)
            self._channels[key] = ring
        return ring

    def append(self, channel: str, message: Message) -> None:
        ring = self._ring(channel)
        if ring and message.timestamp < ring[-1].timestamp:
            message = Message(message.channel, message.sender, message.body, ring[-1].timestamp)
        ring.append(message)

    def seed(self, channel: str, messages: Iterable[Message]) -> None:
        """Load restored history into a ring that has not seen any messages yet."""
        ring = self._ring(channel)
        if ring:
            return
        for message in messages:
            self.append(channel, message)

    def snapshot(self, channel: str, max_turns: int) -> list[Message]:
        """Most recent <= max_turns messages, oldest first."""
        ring = self._channels.get(irc_lower(channel))
        if not ring or max_turns <= 0:
            return []
        if max_turns >= len(ring):
            return list(ring)
        return list(ring)[-max_turns:]

    def has_channel(self, channel: str) -> bool:
        return irc_lower(channel) in self._channels

    def drop(self, channel: str) -> None:
        """Forget a channel (on part)."""
        self._channels.pop(irc_lower(channel), None)

    def __len__(self) -> int:
        return len(self._channels)
