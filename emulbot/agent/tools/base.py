"""Base class for agent tools and the normalized tool result."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

SUCCESS = "ok"
UNSUPPORTED_TOOL = "unsupported_tool"
INVALID_ARGUMENTS = "invalid_arguments"
TIMEOUT = "timeout"
TRANSPORT_ERROR = "transport_error"
EXECUTION_ERROR = "execution_error"


@dataclass(frozen=True)
class ImageAttachment:
    """Encoded image handed to the reasoning service on the next round."""

    mime_type: str
    data: str  # base64

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class ToolResult:
    """
    Outcome of one tool call: Success(text, payload) or Failure(reason, message).

    Every dispatched request yields exactly one of these.
    """

    ok: bool
    content: str
    reason: str = SUCCESS
    payload: dict[str, Any] = field(default_factory=dict)
    attachments: list[ImageAttachment] = field(default_factory=list)

    @classmethod
    def success(
        cls,
        content: str,
        payload: dict[str, Any] | None = None,
        attachments: list[ImageAttachment] | None = None,
    ) -> "ToolResult":
        return cls(ok=True, content=content, payload=dict(payload or {}), attachments=list(attachments or []))

    @classmethod
    def failure(cls, reason: str, message: str) -> "ToolResult":
        return cls(ok=False, content=message, reason=reason)

    def to_message_content(self) -> str:
        """Text fed back to the reasoning service as the tool turn."""
        if self.ok:
            return self.content
        return f"Error ({self.reason}): {self.content}"


class Tool(ABC):
    """
    Abstract base class for agent tools.

    A tool declares its argument schema once; the same schema validates
    incoming arguments and is advertised in the catalog.
    """

    _TYPE_MAP = {
        "string": str,
        "integer": int,
        "number": (int, float),
        "boolean": bool,
        "array": list,
        "object": dict,
    }

    @property
    @abstractmethod
    def name(self) -> str:
        """Tool name used in function calls."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """
        Execute the tool with given parameters.

        Raises ValidationError for semantically bad arguments and
        TransportError for network failures; the registry turns both into
        a failed ToolResult.
        """
        pass

    def validate_params(self, params: dict[str, Any]) -> list[str]:
        """Validate tool parameters against JSON schema. Returns error list (empty if valid)."""
        if not isinstance(params, dict):
            return ["arguments must be an object"]
        schema = self.parameters or {}
        if schema.get("type", "object") != "object":
            raise ValueError(f"Schema must be object type, got {schema.get('type')!r}")
        return self._validate(params, {**schema, "type": "object"}, "")

    def _validate(self, val: Any, schema: dict[str, Any], path: str) -> list[str]:
        t, label = schema.get("type"), path or "parameter"
        expected = self._TYPE_MAP.get(t)
        if expected is not None:
            # bool is an int subclass; keep them apart
            if t in ("integer", "number") and isinstance(val, bool):
                return [f"{label} should be {t}"]
            if not isinstance(val, expected):
                return [f"{label} should be {t}"]

        errors: list[str] = []
        if "enum" in schema and val not in schema["enum"]:
            errors.append(f"{label} must be one of {schema['enum']}")
        if t in ("integer", "number"):
            if "minimum" in schema and val < schema["minimum"]:
                errors.append(f"{label} must be >= {schema['minimum']}")
            if "maximum" in schema and val > schema["maximum"]:
                errors.append(f"{label} must be <= {schema['maximum']}")
        if t == "string":
            if "minLength" in schema and len(val) < schema["minLength"]:
                errors.append(f"{label} must be at least {schema['minLength']} chars")
            if "maxLength" in schema and len(val) > schema["maxLength"]:
                errors.append(f"{label} must be at most {schema['maxLength']} chars")
        if t == "object":
            props = schema.get("properties", {})
            for k in schema.get("required", []):
                if k not in val:
                    errors.append(f"missing required {path + '.' + k if path else k}")
            for k, v in val.items():
                if k in props:
                    errors.extend(self._validate(v, props[k], path + "." + k if path else k))
                elif schema.get("additionalProperties") is False:
                    errors.append(f"unexpected argument {path + '.' + k if path else k}")
        if t == "array" and "items" in schema:
            for i, item in enumerate(val):
                errors.extend(self._validate(item, schema["items"], f"{path}[{i}]" if path else f"[{i}]"))
        return errors

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
