"""IRC channel implementation using the irc library's asyncio reactor."""

from __future__ import annotations

import asyncio
import ssl
from typing import Any

import irc.client
import irc.client_aio
import irc.connection
from loguru import logger

from emulbot.bus.events import OutboundMessage
from emulbot.bus.queue import MessageBus
from emulbot.channels.base import BaseChannel
from emulbot.config.schema import IRCConfig
from emulbot.errors import TransportError
from emulbot.store.admin import AdminStore
from emulbot.utils.helpers import irc_lower, split_response

NICKSERV_READY = ("you are now recognized", "you are now identified", "is not a registered nickname")


class IRCChannel(BaseChannel):
    """
    Single-server IRC connection.

    Reconnects with exponential backoff, joins the store's auto-join
    channels once registered, tracks which channels it is in, and
    implements the join/part control used by admin commands.
    """

    name = "irc"

    def __init__(self, config: IRCConfig, bus: MessageBus, store: AdminStore):
        super().__init__(config, bus)
        self.config: IRCConfig = config
        self.store = store
        self._reactor: irc.client_aio.AioReactor | None = None
        self._connection: Any = None
        self._disconnected = asyncio.Event()
        self._current: set[str] = set()
        self._autojoined = False
        self._tasks: set[asyncio.Task] = set()
        self._reconnect_delay = config.reconnect_initial

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect and stay connected until stop() is called."""
        self._running = True
        self._reconnect_delay = self.config.reconnect_initial

        while self._running:
            self._disconnected.clear()
            try:
                await self._connect()
                await self._disconnected.wait()
            except (irc.client.ServerConnectionError, OSError) as e:
                logger.error(f"Failed to connect to {self.config.server}:{self.config.port}: {e}")
            if not self._running:
                break
            logger.info(f"Disconnected. Waiting {self._reconnect_delay:.0f}s before reconnecting...")
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self.config.reconnect_max)

    async def stop(self) -> None:
        self._running = False
        if self._connection is not None and self._connection.is_connected():
            logger.info("Disconnecting from IRC...")
            self._connection.disconnect("Bye bye~")
        self._disconnected.set()
        for task in list(self._tasks):
            task.cancel()

    async def _connect(self) -> None:
        self._reactor = irc.client_aio.AioReactor(loop=asyncio.get_running_loop())
        for event, handler in (
            ("welcome", self._on_welcome),
            ("privnotice", self._on_privnotice),
            ("nicknameinuse", self._on_nicknameinuse),
            ("join", self._on_join),
            ("part", self._on_part),
            ("kick", self._on_kick),
            ("pubmsg", self._on_pubmsg),
            ("privmsg", self._on_privmsg),
            ("disconnect", self._on_disconnect),
        ):
            self._reactor.add_global_handler(event, handler)

        if self.config.use_tls:
            factory = irc.connection.AioFactory(ssl=ssl.create_default_context())
        else:
            factory = irc.connection.AioFactory()

        logger.info(f"Connecting to {self.config.server}:{self.config.port} as {self.config.nickname}")
        self._current.clear()
        self._autojoined = False
        connection = self._reactor.server()
        await connection.connect(
            self.config.server,
            self.config.port,
            self.config.nickname,
            connect_factory=factory,
        )
        self._connection = connection

    # --- Control used by admin commands ---

    async def join(self, channel: str) -> None:
        if not self._is_connected():
            logger.warning(f"Not connected, {channel} will be joined on reconnect")
            return
        self._connection.join(channel)

    async def part(self, channel: str) -> None:
        if not self._is_connected():
            return
        self._connection.part(channel)

    def current_channels(self) -> set[str]:
        return set(self._current)

    def _is_connected(self) -> bool:
        return self._connection is not None and self._connection.is_connected()

    def _own_nick(self) -> str:
        if self._connection is not None:
            return self._connection.get_nickname() or self.config.nickname
        return self.config.nickname

    # --- Outbound ---

    async def send(self, msg: OutboundMessage) -> None:
        """Send a reply as one PRIVMSG per line, paced by the send delay."""
        if not self._is_connected():
            raise TransportError(f"Not connected, dropping message to {msg.chat_id}")

        lines = split_response(self.config.line_limit, msg.content)
        for i, line in enumerate(lines):
            if i:
                await asyncio.sleep(self.config.send_delay)
            try:
                self._connection.privmsg(msg.chat_id, line)
            except irc.client.ServerNotConnectedError as e:
                raise TransportError(f"Lost connection while sending to {msg.chat_id}") from e
            except ValueError as e:
                logger.error(f"Failed to send line to {msg.chat_id}: {e}")
                break

    # --- Event handlers (called synchronously by the reactor) ---

    def _on_welcome(self, connection, event) -> None:
        logger.info(f"Registered on {self.config.server} as {connection.get_nickname()}")
        self._reconnect_delay = self.config.reconnect_initial
        if self.config.nickserv_password:
            connection.privmsg("NickServ", f"IDENTIFY {self.config.nickserv_password}")
        else:
            self._join_autojoin(connection)

    def _on_privnotice(self, connection, event) -> None:
        source = event.source.nick if event.source else ""
        text = event.arguments[0] if event.arguments else ""
        logger.info(f"NOTICE from {source}: {text}")
        if irc_lower(source) == "nickserv" and any(s in text.lower() for s in NICKSERV_READY):
            logger.info("NickServ recognized us, joining channels")
            self._join_autojoin(connection)

    def _on_nicknameinuse(self, connection, event) -> None:
        new_nick = f"{connection.get_nickname() or self.config.nickname}_"
        logger.warning(f"Nickname in use, trying {new_nick}")
        connection.nick(new_nick)

    def _join_autojoin(self, connection) -> None:
        if self._autojoined:
            return
        self._autojoined = True
        for channel in sorted(self.store.list_channels()):
            logger.info(f"Auto-joining {channel}")
            connection.join(channel)

    def _on_join(self, connection, event) -> None:
        if irc_lower(event.source.nick) == irc_lower(self._own_nick()):
            logger.info(f"Successfully joined {event.target}")
            self._current.add(irc_lower(event.target))

    def _on_part(self, connection, event) -> None:
        if irc_lower(event.source.nick) == irc_lower(self._own_nick()):
            logger.info(f"Left {event.target}")
            self._current.discard(irc_lower(event.target))

    def _on_kick(self, connection, event) -> None:
        kicked = event.arguments[0] if event.arguments else ""
        if irc_lower(kicked) == irc_lower(self._own_nick()):
            logger.warning(f"Kicked from {event.target} by {event.source.nick}")
            self._current.discard(irc_lower(event.target))

    def _on_pubmsg(self, connection, event) -> None:
        self._spawn(self._handle_message(
            sender_id=event.source.nick,
            chat_id=event.target,
            content=event.arguments[0] if event.arguments else "",
            metadata={"is_private": False},
        ))

    def _on_privmsg(self, connection, event) -> None:
        self._spawn(self._handle_message(
            sender_id=event.source.nick,
            chat_id=event.source.nick,
            content=event.arguments[0] if event.arguments else "",
            metadata={"is_private": True},
        ))

    def _on_disconnect(self, connection, event) -> None:
        logger.warning(f"Disconnected from {self.config.server}")
        self._current.clear()
        self._disconnected.set()

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
