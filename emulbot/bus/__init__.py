"""Message bus module for decoupled channel-agent communication."""

from emulbot.bus.events import InboundMessage, OutboundMessage
from emulbot.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
