"""Event types for the message bus."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from emulbot.utils.helpers import irc_lower


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # irc
    sender_id: str  # Sender nickname
    chat_id: str  # IRC channel, or the sender nick for private messages
    content: str  # Message text
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        """Unique key for per-channel serialization."""
        if self.is_private:
            return f"{self.channel}:private:{irc_lower(self.sender_id)}"
        return f"{self.channel}:{irc_lower(self.chat_id)}"

    @property
    def is_private(self) -> bool:
        return bool(self.metadata.get("is_private"))


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
