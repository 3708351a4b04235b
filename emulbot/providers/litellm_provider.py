"""LiteLLM provider implementation for multi-provider support."""

from __future__ import annotations

import uuid
from typing import Any

import json_repair
import litellm
from litellm import acompletion
from loguru import logger

from emulbot.errors import EmulBotError, TransportError
from emulbot.providers.base import LLMProvider, LLMResponse, ToolCallRequest

_TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.RateLimitError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    The default model is Gemini; any litellm model id works
    (e.g. anthropic/claude-3-5-haiku, openai/gpt-4o-mini).
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gemini/gemini-2.5-pro",
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = extra_headers or {}
        litellm.suppress_debug_info = True
        litellm.drop_params = True

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await acompletion(**kwargs)
        except _TRANSIENT_ERRORS as e:
            raise TransportError(f"LLM transport error: {e}") from e
        except Exception as e:
            logger.error(f"LLM call failed: {e}")
            raise EmulBotError(f"LLM call failed: {e}") from e
        try:
            return self._parse_response(response)
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            logger.error(f"Malformed LLM response: {e!r}")
            raise EmulBotError(f"Malformed LLM response: {e!r}") from e

    @staticmethod
    def _parse_response(response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallRequest] = []
        for tc in getattr(message, "tool_calls", None) or []:
            args = tc.function.arguments
            if isinstance(args, str):
                args = json_repair.loads(args) if args.strip() else {}
            if not isinstance(args, dict):
                args = {}
            tool_calls.append(ToolCallRequest(
                id=tc.id or f"call_{uuid.uuid4().hex[:8]}",
                name=tc.function.name,
                arguments=args,
            ))

        usage: dict[str, int] = {}
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        return self.default_model
