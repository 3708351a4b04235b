"""Base channel interface for chat platforms."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from emulbot.bus.events import InboundMessage, OutboundMessage
from emulbot.bus.queue import MessageBus


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel connects to a chat network, publishes what it hears to the
    bus and delivers outbound messages.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Connect and keep running until stop() is called."""

    @abstractmethod
    async def stop(self) -> None:
        """Disconnect and release resources."""

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Deliver one outbound message."""

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Publish an incoming message to the bus."""
        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            media=media or [],
            metadata=metadata or {},
        )
        logger.debug(f"{self.name} inbound from {sender_id} in {chat_id}: {content[:50]}")
        await self.bus.publish_inbound(msg)

    @property
    def is_running(self) -> bool:
        return self._running
