"""Context builder for assembling reasoning-service requests."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from emulbot.agent.buffer import Message
from emulbot.agent.tools.base import ImageAttachment
from emulbot.utils.helpers import irc_lower

DEFAULT_PROMPT = """You are {nickname}, a playful regular in an IRC channel.
Keep replies short and conversational: a line or two, no markdown.
Use the available tools when someone asks for dice rolls, downloads or to look at an image.
When using tools, first check if you already have the result you need."""

INTERJECT_TRIGGER = "Current trigger: Random chance (interject your opinion in the current conversation)"


class ContextBuilder:
    """
    Builds the message list for one orchestration.

    Layout: system prompt, then the channel history as turns (the bot's own
    lines as assistant, everyone else as ``nick: text`` user turns), then a
    trigger turn saying why the bot is speaking.
    """

    def __init__(self, nickname: str, prompt_path: Path | None = None):
        self.nickname = nickname
        self.prompt_path = prompt_path

    def build_system_prompt(self, channel: str) -> str:
        """Personality text plus runtime info. The prompt file is re-read each time."""
        prompt = None
        if self.prompt_path is not None:
            try:
                prompt = self.prompt_path.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning(f"Failed to read prompt file {self.prompt_path}: {e}")
        if not prompt:
            prompt = DEFAULT_PROMPT.format(nickname=self.nickname)
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        return f"{prompt}\n\n## Runtime\nYour nickname: {self.nickname}\nChannel: {channel}\nCurrent time: {now}"

    def build_messages(
        self,
        history: list[Message],
        channel: str,
        trigger: Message | None,
    ) -> list[dict[str, Any]]:
        """
        Build the initial request.

        Args:
            history: Buffer snapshot, oldest first. May end with the trigger.
            channel: Channel the reply goes to.
            trigger: The addressing message, or None for a random interjection.
        """
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": self.build_system_prompt(channel)},
        ]
        turns = list(history)
        if trigger is not None and turns and turns[-1] == trigger:
            turns.pop()

        me = irc_lower(self.nickname)
        for entry in turns:
            if irc_lower(entry.sender) == me:
                messages.append({"role": "assistant", "content": entry.body})
            else:
                messages.append({"role": "user", "content": f"{entry.sender}: {entry.body}"})

        if trigger is not None:
            messages.append({
                "role": "user",
                "content": f"Current trigger from {trigger.sender}:\n{trigger.body}",
            })
        else:
            messages.append({"role": "user", "content": INTERJECT_TRIGGER})
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """Add the model's tool-call turn to the message list."""
        msg: dict[str, Any] = {"role": "assistant", "content": content or ""}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        messages.append(msg)
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """Add a tool result to the message list."""
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages

    def add_images(
        self,
        messages: list[dict[str, Any]],
        attachments: list[ImageAttachment],
    ) -> list[dict[str, Any]]:
        """Inject fetched images as a user turn so the next round can see them."""
        if not attachments:
            return messages
        content: list[dict[str, Any]] = [{"type": "text", "text": "Fetched image data:"}]
        for attachment in attachments:
            content.append({"type": "image_url", "image_url": {"url": attachment.data_url()}})
        messages.append({"role": "user", "content": content})
        return messages

    @staticmethod
    def tool_call_dicts(tool_calls) -> list[dict[str, Any]]:
        return [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
            }
            for tc in tool_calls
        ]
