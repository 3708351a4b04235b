"""Agent core module."""

from emulbot.agent.buffer import ContextBuffer, Message
from emulbot.agent.context import ContextBuilder
from emulbot.agent.interjection import InterjectionScheduler
from emulbot.agent.loop import AgentLoop

__all__ = ["AgentLoop", "ContextBuffer", "ContextBuilder", "InterjectionScheduler", "Message"]
