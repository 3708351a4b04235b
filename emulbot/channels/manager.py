"""Channel manager for coordinating chat channels."""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from emulbot.bus.events import OutboundMessage
from emulbot.bus.queue import MessageBus
from emulbot.channels.base import BaseChannel
from emulbot.channels.irc import IRCChannel
from emulbot.config.schema import Config
from emulbot.errors import TransportError
from emulbot.store.admin import AdminStore


class ChannelManager:
    """
    Manages chat channels and coordinates message routing.

    Responsibilities:
    - Initialize the IRC channel
    - Start/stop channels
    - Route outbound messages, serially per target
    """

    def __init__(
        self,
        config: Config,
        bus: MessageBus,
        store: AdminStore,
        channels: dict[str, BaseChannel] | None = None,
    ):
        self.config = config
        self.bus = bus
        self.store = store
        self.channels: dict[str, BaseChannel] = channels if channels is not None else {}
        self._dispatch_task: asyncio.Task | None = None
        self._outbound_queues: dict[str, asyncio.Queue[OutboundMessage]] = {}
        self._outbound_workers: dict[str, asyncio.Task[None]] = {}

        if channels is None:
            self._init_channels()

    def _init_channels(self) -> None:
        self.channels["irc"] = IRCChannel(self.config.irc, self.bus, self.store)
        logger.info(f"IRC channel enabled ({self.config.irc.server}:{self.config.irc.port})")

    async def _start_channel(self, name: str, channel: BaseChannel) -> None:
        """Start a channel and log any exceptions."""
        try:
            await channel.start()
        except Exception as e:
            logger.error(f"Failed to start channel {name}: {e}")

    async def start_all(self) -> None:
        """Start all channels and the outbound dispatcher."""
        if not self.channels:
            logger.warning("No channels enabled")
            return

        self._dispatch_task = asyncio.create_task(self._dispatch_outbound())

        tasks = []
        for name, channel in self.channels.items():
            logger.info(f"Starting {name} channel...")
            tasks.append(asyncio.create_task(self._start_channel(name, channel)))

        await asyncio.gather(*tasks, return_exceptions=True)

    async def stop_all(self) -> None:
        """Stop all channels and the dispatcher."""
        logger.info("Stopping all channels...")

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
        await self._stop_outbound_workers()

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

    async def _dispatch_outbound(self) -> None:
        """Dispatch outbound messages to the appropriate channel."""
        logger.info("Outbound dispatcher started")

        while True:
            try:
                msg = await asyncio.wait_for(
                    self.bus.consume_outbound(),
                    timeout=1.0
                )

                if msg.channel not in self.channels:
                    logger.warning(f"Unknown channel: {msg.channel}")
                    continue
                key = f"{msg.channel}:{msg.chat_id}"
                queue = self._outbound_queues.setdefault(key, asyncio.Queue())
                await queue.put(msg)
                self._ensure_outbound_worker(key, msg.channel)

            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def _ensure_outbound_worker(self, key: str, channel_name: str) -> None:
        """Ensure a per-target outbound worker exists."""
        worker = self._outbound_workers.get(key)
        if worker is None or worker.done():
            queue = self._outbound_queues[key]
            self._outbound_workers[key] = asyncio.create_task(
                self._outbound_worker(key, channel_name, queue)
            )

    async def _outbound_worker(
        self,
        key: str,
        channel_name: str,
        queue: asyncio.Queue[OutboundMessage],
    ) -> None:
        """Send outbound messages for one target serially, so multi-line replies never interleave."""
        channel = self.channels.get(channel_name)
        if not channel:
            return
        try:
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    if queue.empty():
                        break
                    continue
                try:
                    await channel.send(msg)
                except TransportError as e:
                    logger.warning(f"Dropping reply to {msg.chat_id}: {e}")
                except Exception as e:
                    logger.error(f"Error sending to {msg.chat_id} on {channel_name}: {e}")
                if queue.empty():
                    break
        finally:
            if self._outbound_workers.get(key) is asyncio.current_task():
                self._outbound_workers.pop(key, None)
            # Queues cleared by _stop_outbound_workers are not revived.
            owned = self._outbound_queues.get(key) is queue
            if owned and queue.empty():
                self._outbound_queues.pop(key, None)
            elif owned:
                self._outbound_workers[key] = asyncio.create_task(
                    self._outbound_worker(key, channel_name, queue)
                )

    async def _stop_outbound_workers(self) -> None:
        workers = list(self._outbound_workers.values())
        self._outbound_workers.clear()
        self._outbound_queues.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def get_channel(self, name: str) -> BaseChannel | None:
        return self.channels.get(name)

    def get_status(self) -> dict[str, Any]:
        """Get status of all channels."""
        return {
            name: {
                "enabled": True,
                "running": channel.is_running
            }
            for name, channel in self.channels.items()
        }

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels.keys())
