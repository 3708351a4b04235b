"""LLM provider abstraction module."""

from emulbot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from emulbot.providers.litellm_provider import LiteLLMProvider

__all__ = ["LLMProvider", "LLMResponse", "LiteLLMProvider", "ToolCallRequest"]
