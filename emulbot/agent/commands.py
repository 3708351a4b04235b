"""Privileged commands received by private message."""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from loguru import logger

from emulbot.agent.interjection import InterjectionScheduler
from emulbot.errors import PermissionDeniedError, StoreError, ValidationError
from emulbot.store.admin import AdminStore
from emulbot.utils.helpers import irc_lower

DENIED = "Sorry, I only take commands from registered admins, desu~"
HELP = (
    "Admin commands: !join <#chan>, !part <#chan>, !add_admin <nick>, !del_admin <nick>, "
    "!admins, !channels, !interject [#chan], !help"
)


class ChatControl(Protocol):
    """The part of the chat-protocol collaborator that commands drive."""

    async def join(self, channel: str) -> None: ...
    async def part(self, channel: str) -> None: ...
    def current_channels(self) -> set[str]: ...


def _as_channel(arg: str) -> str:
    return arg if arg.startswith(("#", "&")) else f"#{arg}"


class AdminCommandHandler:
    """
    Stateless parser for ``!verb [arg]`` private messages.

    Every invocation returns exactly one reply. Non-admins get the same
    neutral denial for anything but ``!help`` and nothing is executed.
    """

    def __init__(
        self,
        store: AdminStore,
        scheduler: InterjectionScheduler,
        control: ChatControl | None = None,
        on_leave: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.control = control
        self.on_leave = on_leave
        self._handlers: dict[str, Callable[[str, str | None], Awaitable[str]]] = {
            "!join": self._join,
            "!part": self._part,
            "!add_admin": self._add_admin,
            "!del_admin": self._del_admin,
            "!remove_admin": self._del_admin,
            "!admins": self._admins,
            "!channels": self._channels,
            "!interject": self._interject,
        }

    async def handle(self, sender: str, text: str) -> str:
        parts = text.split()
        verb = parts[0].lower() if parts else ""
        arg = parts[1] if len(parts) > 1 else None
        logger.info(f"Admin command from {sender}: {verb or '(empty)'}")

        if verb == "!help":
            return HELP
        try:
            self._require_admin(sender)
        except PermissionDeniedError as e:
            logger.warning(str(e))
            return DENIED

        handler = self._handlers.get(verb)
        if handler is None:
            return f"Hmm? Unknown command or format. {HELP}"
        try:
            return await handler(sender, arg)
        except ValidationError as e:
            return f"That doesn't look right: {e}"
        except StoreError as e:
            logger.error(f"Store failure during {verb}: {e}")
            return "Oops, I couldn't save that right now. Nothing was changed."

    def _require_admin(self, sender: str) -> None:
        if not self.store.is_admin(sender):
            raise PermissionDeniedError(f"Non-admin PM command attempt from {sender}")

    async def _join(self, sender: str, arg: str | None) -> str:
        if not arg:
            return "Usage: !join #channel"
        channel = _as_channel(arg)
        if await self.store.add_channel(channel):
            logger.info(f"{sender} added channel {channel}")
            reply = f"Okay! Added {channel} and joining now!"
        else:
            reply = f"I already know about {channel}! Joining anyway."
        if self.control is not None:
            await self.control.join(channel)
        return reply

    async def _part(self, sender: str, arg: str | None) -> str:
        if not arg:
            return "Usage: !part #channel"
        channel = _as_channel(arg)
        if await self.store.remove_channel(channel):
            logger.info(f"{sender} removed channel {channel}")
            await self._leave(channel)
            return f"Got it! Leaving {channel} and won't rejoin automatically."
        current = {irc_lower(c) for c in self.control.current_channels()} if self.control else set()
        if irc_lower(channel) in current:
            await self._leave(channel)
            return f"Okay, leaving {channel} for this session (wasn't set to auto-join)."
        return f"I wasn't set to auto-join {channel} anyway."

    async def _leave(self, channel: str) -> None:
        if self.control is not None:
            await self.control.part(channel)
        if self.on_leave is not None:
            await self.on_leave(channel)

    async def _add_admin(self, sender: str, arg: str | None) -> str:
        if not arg:
            return "Usage: !add_admin <nickname>"
        if await self.store.add_admin(arg):
            logger.info(f"{sender} added admin {arg}")
            return f"Okay, '{arg}' is now an admin!"
        return f"'{arg}' is already an admin."

    async def _del_admin(self, sender: str, arg: str | None) -> str:
        if not arg:
            return "Usage: !del_admin <nickname>"
        if irc_lower(arg) == irc_lower(sender):
            return "You can't remove yourself, silly!"
        if await self.store.remove_admin(arg):
            logger.info(f"{sender} removed admin {arg}")
            return f"Okay, '{arg}' is no longer an admin."
        return f"'{arg}' wasn't an admin anyway."

    async def _admins(self, sender: str, arg: str | None) -> str:
        admins = sorted(self.store.list_admins())
        if not admins:
            return "There are no registered admins!"
        return f"Registered admins: {', '.join(admins)}"

    async def _channels(self, sender: str, arg: str | None) -> str:
        channels = sorted(self.store.list_channels())
        if not channels:
            return "I'm not set to auto-join any channels."
        return f"Auto-join channels: {', '.join(channels)}"

    async def _interject(self, sender: str, arg: str | None) -> str:
        if arg:
            channel = _as_channel(arg)
            self.scheduler.force_next(channel)
            return f"Okay, I'll interject in {channel} on the next message!"
        self.scheduler.force_next()
        return "Okay, I'll interject on the next message I see!"
