"""Chat channels module."""

from emulbot.channels.base import BaseChannel
from emulbot.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
