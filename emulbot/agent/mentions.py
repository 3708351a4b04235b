"""Direct-address and mention detection."""

from __future__ import annotations

import asyncio

from loguru import logger

from emulbot.errors import EmulBotError
from emulbot.providers.base import LLMProvider
from emulbot.utils.helpers import irc_lower


def is_addressed(nickname: str, body: str) -> bool:
    """True for ``nick: ...``, ``nick, ...`` or a message whose first word is the nick."""
    nick = irc_lower(nickname)
    text = irc_lower(body.strip())
    if not nick or not text:
        return False
    if text.startswith(f"{nick}:") or text.startswith(f"{nick},"):
        return True
    return text.split()[0] == nick


def mentions(nickname: str, body: str) -> bool:
    """True when the nick appears after a space anywhere in the message."""
    nick = irc_lower(nickname)
    return bool(nick) and f" {nick}" in irc_lower(body)


class MentionClassifier:
    """
    Ask the model whether an indirect mention is aimed at the bot.

    Used for messages like "I wonder what Emul thinks". Any failure or
    unclear answer counts as a plain mention.
    """

    def __init__(self, provider: LLMProvider, nickname: str, model: str | None = None, timeout: float = 15.0):
        self.provider = provider
        self.nickname = nickname
        self.model = model
        self.timeout = timeout

    async def is_aimed_at_bot(self, message: str) -> bool:
        system = (
            f"You are {self.nickname}. Check if the provided message is aimed at {self.nickname}, "
            f'or if it is merely a mention. Respond with a single word, "respond" or "mention".'
        )
        try:
            response = await asyncio.wait_for(
                self.provider.chat(
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": message},
                    ],
                    model=self.model,
                    max_tokens=8,
                    temperature=0.0,
                ),
                timeout=self.timeout,
            )
        except (EmulBotError, asyncio.TimeoutError) as e:
            logger.warning(f"Mention classifier unavailable: {e}")
            return False

        answer = (response.content or "").strip().lower()
        if "respond" in answer:
            return True
        if "mention" not in answer:
            logger.warning(f"Unexpected mention classifier answer: {answer!r}")
        return False
