"""Utility functions for emulbot."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import httpx
from loguru import logger

from emulbot.errors import TransportError

T = TypeVar("T")

_RFC1459_UPPER = "ABCDEFGHIJKLMNOPQRSTUVWXYZ[]\\~"
_RFC1459_LOWER = "abcdefghijklmnopqrstuvwxyz{}|^"
_IRC_CASEFOLD = str.maketrans(_RFC1459_UPPER, _RFC1459_LOWER)

NICK_MAX_LEN = 30
CHANNEL_MAX_LEN = 50
_NICK_RE = re.compile(r"^[A-Za-z\[\]\\`_^{|}][A-Za-z0-9\[\]\\`_^{|}-]*$")
_CHANNEL_FORBIDDEN = {" ", ",", "\x07", "\r", "\n", "\x00"}


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the emulbot data directory (~/.emulbot)."""
    return ensure_dir(Path.home() / ".emulbot")


def irc_lower(name: str) -> str:
    """Lowercase an IRC identity using RFC 1459 case mapping."""
    return name.translate(_IRC_CASEFOLD)


def is_valid_nick(nick: str) -> bool:
    return bool(nick) and len(nick) <= NICK_MAX_LEN and bool(_NICK_RE.match(nick))


def is_valid_channel(channel: str) -> bool:
    if not channel or len(channel) > CHANNEL_MAX_LEN or channel[0] not in "#&":
        return False
    if len(channel) == 1:
        return False
    return not any(ch in _CHANNEL_FORBIDDEN for ch in channel)


def split_response(limit: int, response: str) -> list[str]:
    """
    Split a reply into IRC-sized lines.

    Every newline starts a new message. Lines longer than ``limit`` break at
    the last space before the limit, or hard at the limit if there is none.
    """
    parts: list[str] = []
    for line in response.splitlines():
        remaining = line
        while remaining:
            if len(remaining) <= limit:
                parts.append(remaining)
                break
            split_at = remaining.rfind(" ", 0, limit)
            if split_at <= 0:
                split_at = limit
            parts.append(remaining[:split_at])
            remaining = remaining[split_at:].lstrip()
    return parts


def _backoff(attempt: int) -> float:
    return min(0.5 * attempt, 2.0)


def retry_budget(timeout: float, attempts: int) -> float:
    """Worst-case wall time of ``retry_transient`` with these settings."""
    attempts = max(1, attempts)
    return timeout * attempts + sum(_backoff(a) for a in range(1, attempts))


async def retry_transient(
    factory: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    timeout: float | None = None,
    label: str = "request",
) -> T:
    """
    Await ``factory()`` with a timeout, retrying transport failures only.

    ``attempts`` counts the first try. Anything that is not a transport
    failure propagates immediately.
    """
    attempts = max(1, attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            if timeout is None:
                return await factory()
            return await asyncio.wait_for(factory(), timeout=timeout)
        except (TransportError, httpx.TransportError, asyncio.TimeoutError) as e:
            last_error = e
            if attempt < attempts:
                logger.warning(f"{label} failed (attempt {attempt}/{attempts}): {e!r}, retrying")
                await asyncio.sleep(_backoff(attempt))
    if isinstance(last_error, asyncio.TimeoutError):
        raise TransportError(f"{label} timed out after {timeout}s") from last_error
    raise TransportError(f"{label} failed after {attempts} attempts: {last_error}") from last_error
