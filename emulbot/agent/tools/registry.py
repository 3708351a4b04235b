"""Tool registry for dynamic tool management."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from emulbot.agent.tools.base import (
    EXECUTION_ERROR,
    INVALID_ARGUMENTS,
    TIMEOUT,
    TRANSPORT_ERROR,
    UNSUPPORTED_TOOL,
    Tool,
    ToolResult,
)
from emulbot.errors import TransportError, ValidationError
from emulbot.providers.base import ToolCallRequest


class ToolRegistry:
    """
    Registry for agent tools.

    Tools are registered at startup and the catalog is frozen before the
    first dispatch; lookups are exact name matches only.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._tools: dict[str, Tool] = {}
        self._definitions: list[dict[str, Any]] | None = None

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if self._definitions is not None:
            raise RuntimeError("Tool catalog is frozen; register tools before the first dispatch")
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def freeze(self) -> None:
        """Resolve the catalog once; later registrations are rejected."""
        if self._definitions is None:
            self._definitions = [tool.to_schema() for tool in self._tools.values()]

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions in OpenAI format."""
        self.freeze()
        return list(self._definitions or [])

    async def dispatch(self, call: ToolCallRequest) -> ToolResult:
        """
        Execute one tool call and normalize the outcome.

        Never raises: unknown tools, invalid arguments, timeouts and tool
        crashes all come back as a failed ToolResult.
        """
        self.freeze()
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {call.name}")
            return ToolResult.failure(UNSUPPORTED_TOOL, f"Unsupported tool: {call.name}")

        params = call.arguments if isinstance(call.arguments, dict) else {}
        try:
            errors = tool.validate_params(call.arguments)
        except ValueError as e:
            return ToolResult.failure(EXECUTION_ERROR, str(e))
        if errors:
            return ToolResult.failure(
                INVALID_ARGUMENTS,
                f"Invalid parameters for tool '{call.name}': " + "; ".join(errors),
            )

        try:
            return await asyncio.wait_for(tool.execute(**params), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tool {call.name} timed out after {self.timeout}s")
            return ToolResult.failure(TIMEOUT, f"{call.name} did not finish within {self.timeout:g}s")
        except ValidationError as e:
            return ToolResult.failure(INVALID_ARGUMENTS, str(e))
        except TransportError as e:
            logger.warning(f"Tool {call.name} transport failure: {e}")
            return ToolResult.failure(TRANSPORT_ERROR, str(e))
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}")
            return ToolResult.failure(EXECUTION_ERROR, f"Error executing {call.name}: {e}")

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
