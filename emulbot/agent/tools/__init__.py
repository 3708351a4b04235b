"""Agent tools module."""

from emulbot.agent.tools.base import ImageAttachment, Tool, ToolResult
from emulbot.agent.tools.registry import ToolRegistry

__all__ = ["ImageAttachment", "Tool", "ToolRegistry", "ToolResult"]
