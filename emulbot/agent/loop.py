"""Agent loop: the core processing engine."""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from emulbot.agent.buffer import ContextBuffer, Message
from emulbot.agent.commands import AdminCommandHandler, ChatControl
from emulbot.agent.context import ContextBuilder
from emulbot.agent.interjection import InterjectionScheduler
from emulbot.agent.mentions import MentionClassifier, is_addressed, mentions
from emulbot.agent.tools.dice import RollDiceTool
from emulbot.agent.tools.image import FetchImageTool
from emulbot.agent.tools.registry import ToolRegistry
from emulbot.agent.tools.torrent import DownloadTorrentTool, WatchDirJobInitiator
from emulbot.bus.events import InboundMessage, OutboundMessage
from emulbot.bus.queue import MessageBus
from emulbot.config.schema import InterjectionConfig, ToolsConfig
from emulbot.errors import OrchestrationLimitError, TransportError
from emulbot.providers.base import LLMProvider
from emulbot.store.admin import AdminStore
from emulbot.utils.helpers import irc_lower, retry_budget, retry_transient

TRANSPORT_FAILURE_REPLY = "Eeep! I had trouble thinking about that..."
LIMIT_REPLY = "Wawa~ I got tangled up in my own tools and couldn't finish that thought."
EMPTY_REPLY = "Hmm, I lost my train of thought."

# Seconds left for decoding or job hand-off after the last fetch attempt.
TOOL_PREPARE_SLACK = 5.0


@dataclass
class OrchestrationOutcome:
    """What one orchestration produced. ``degraded`` replies are not remembered."""

    content: str
    rounds: int
    tools_used: list[str] = field(default_factory=list)
    degraded: bool = False


class AgentLoop:
    """
    The agent loop is the core processing engine.

    It:
    1. Receives messages from the bus, serialized per channel
    2. Routes private messages to the admin command handler
    3. Records channel messages in the context buffer
    4. Decides whether to respond (address, mention, interjection)
    5. Runs a bounded tool-calling exchange with the LLM
    6. Sends exactly one reply per triggered conversation
    """

    def __init__(
        self,
        bus: MessageBus,
        provider: LLMProvider,
        store: AdminStore,
        nickname: str,
        model: str | None = None,
        prompt_path: Path | None = None,
        max_rounds: int = 3,
        history_turns: int = 100,
        buffer_capacity: int = 500,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        api_timeout: float = 60.0,
        transport_retries: int = 2,
        interjection_config: InterjectionConfig | None = None,
        tools_config: ToolsConfig | None = None,
        scheduler: InterjectionScheduler | None = None,
        mention_scheduler: InterjectionScheduler | None = None,
        tools: ToolRegistry | None = None,
        control: ChatControl | None = None,
        channel_name: str = "irc",
    ):
        self.bus = bus
        self.provider = provider
        self.store = store
        self.nickname = nickname
        self.model = model or provider.get_default_model()
        self.max_rounds = max(1, max_rounds)
        self.history_turns = history_turns
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_timeout = api_timeout
        self.transport_retries = max(0, min(2, transport_retries))
        self.channel_name = channel_name
        self.interjection_config = interjection_config or InterjectionConfig()
        self.tools_config = tools_config or ToolsConfig()

        self.buffer = ContextBuffer(buffer_capacity)
        self.context = ContextBuilder(nickname, prompt_path)
        self.scheduler = scheduler or InterjectionScheduler.from_config(self.interjection_config)
        self.mention_scheduler = mention_scheduler or InterjectionScheduler.from_config(
            self.interjection_config,
            chance=self.interjection_config.mention_chance,
        )
        self.classifier = (
            MentionClassifier(provider, nickname, model=self.model, timeout=api_timeout)
            if self.interjection_config.mention_classifier
            else None
        )
        self.commands = AdminCommandHandler(store, self.scheduler, control, on_leave=self.forget_channel)
        if tools is None:
            tools = ToolRegistry(timeout=self._tool_timeout())
            self._register_default_tools(tools)
        self.tools = tools
        self.tools.freeze()

        self._running = False
        self._seeded: set[str] = set()
        self._channel_locks: dict[str, asyncio.Lock] = {}
        self._session_queues: dict[str, asyncio.Queue[InboundMessage]] = {}
        self._session_workers: dict[str, asyncio.Task[None]] = {}

    def _tool_timeout(self) -> float:
        """Per-call ceiling that still leaves room for every fetch retry."""
        cfg = self.tools_config
        fetching = retry_budget(cfg.image_fetch_timeout, self.transport_retries + 1)
        return max(cfg.timeout, fetching + TOOL_PREPARE_SLACK)

    def _register_default_tools(self, tools: ToolRegistry) -> None:
        """Register the fixed tool catalog."""
        cfg = self.tools_config
        tools.register(RollDiceTool(
            max_dice=cfg.max_dice,
            max_sides=cfg.max_sides,
            max_modifier=cfg.max_modifier,
        ))
        tools.register(DownloadTorrentTool(
            initiator=WatchDirJobInitiator(Path(cfg.torrent_watch_dir).expanduser()),
            fetch_timeout=cfg.image_fetch_timeout,
            retries=self.transport_retries,
        ))
        tools.register(FetchImageTool(
            max_bytes=cfg.max_image_bytes,
            fetch_timeout=cfg.image_fetch_timeout,
            max_dimension=cfg.max_image_dimension,
            cache_size=cfg.image_cache_size,
            retries=self.transport_retries,
        ))

    def set_control(self, control: ChatControl) -> None:
        """Attach the chat-protocol collaborator once it exists."""
        self.commands.control = control

    @staticmethod
    def _strip_think(text: str | None) -> str | None:
        """Remove <think>…</think> blocks that some models embed in content."""
        if not text:
            return None
        return re.sub(r"<think>[\s\S]*?</think>", "", text).strip() or None

    # --- Bus intake and per-channel workers ---

    async def run(self) -> None:
        """Run the agent loop, processing messages from the bus."""
        self._running = True
        logger.info("Agent loop started")

        try:
            while self._running:
                try:
                    msg = await asyncio.wait_for(
                        self.bus.consume_inbound(),
                        timeout=1.0
                    )
                except asyncio.TimeoutError:
                    continue
                key = msg.session_key
                queue = self._session_queues.setdefault(key, asyncio.Queue())
                await queue.put(msg)
                self._ensure_session_worker(key)
        finally:
            await self._shutdown_session_workers()

    def stop(self) -> None:
        """Stop the agent loop."""
        self._running = False
        logger.info("Agent loop stopping")

    def _ensure_session_worker(self, key: str) -> None:
        """Ensure a per-channel worker exists so channels run in parallel."""
        worker = self._session_workers.get(key)
        if worker is None or worker.done():
            queue = self._session_queues[key]
            self._session_workers[key] = asyncio.create_task(
                self._session_worker(key, queue)
            )

    async def _session_worker(self, key: str, queue: asyncio.Queue[InboundMessage]) -> None:
        """Process one channel queue serially, while other channels run concurrently."""
        try:
            while self._running or not queue.empty():
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._process_inbound_message(msg)
                if queue.empty():
                    break
        finally:
            if self._session_workers.get(key) is asyncio.current_task():
                self._session_workers.pop(key, None)
            owned = self._session_queues.get(key) is queue
            if owned and queue.empty():
                self._session_queues.pop(key, None)
            elif owned and self._running:
                self._session_workers[key] = asyncio.create_task(
                    self._session_worker(key, queue)
                )

    async def _shutdown_session_workers(self) -> None:
        """Cancel and await all active workers. Committed store writes stay committed."""
        workers = list(self._session_workers.values())
        self._session_workers.clear()
        self._session_queues.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def _process_inbound_message(self, msg: InboundMessage) -> None:
        """Process one inbound message and publish the reply, if any."""
        try:
            response = await self._process_message(msg)
            if response:
                await self.bus.publish_outbound(response)
        except Exception as e:
            logger.error(f"Error processing message from {msg.sender_id} in {msg.chat_id}: {e}")
            if msg.is_private:
                await self.bus.publish_outbound(OutboundMessage(
                    channel=msg.channel,
                    chat_id=msg.sender_id,
                    content="Oops, something went wrong handling that command.",
                ))

    # --- Message handling ---

    async def _process_message(self, msg: InboundMessage) -> OutboundMessage | None:
        """
        Process a single inbound message.

        Returns:
            The reply to publish, or None when the bot stays silent.
        """
        if msg.is_private:
            reply = await self.commands.handle(msg.sender_id, msg.content)
            return OutboundMessage(channel=msg.channel, chat_id=msg.sender_id, content=reply)

        async with self._channel_lock(msg.chat_id):
            return await self._process_channel_message(msg)

    async def _process_channel_message(self, msg: InboundMessage) -> OutboundMessage | None:
        """Record one channel line and reply if triggered. Caller holds the channel lock."""
        channel = msg.chat_id
        body = msg.content.strip()
        if not body:
            return None

        await self._ensure_seeded(channel)
        entry = Message(
            channel=channel,
            sender=msg.sender_id,
            body=msg.content,
            timestamp=msg.timestamp.timestamp(),
        )
        self.buffer.append(channel, entry)
        await self.store.log_message(channel, msg.sender_id, msg.content, entry.timestamp)

        if irc_lower(msg.sender_id) == irc_lower(self.nickname):
            return None

        addressed = await self._is_addressed(channel, msg.content)
        if addressed:
            trigger: Message | None = entry
        elif self.scheduler.evaluate(channel, is_private_message=False):
            trigger = None
        else:
            return None

        preview = body[:80] + "..." if len(body) > 80 else body
        logger.info(
            f"Responding in {channel} ({'addressed by ' + msg.sender_id if addressed else 'interjection'}): {preview}"
        )
        outcome = await self._orchestrate(channel, trigger)
        return OutboundMessage(channel=msg.channel, chat_id=channel, content=outcome.content)

    async def process_direct(
        self,
        content: str,
        sender_id: str = "user",
        chat_id: str = "#direct",
        private: bool = False,
    ) -> str:
        """Process one message without the bus (CLI and tests). Returns the reply or ""."""
        msg = InboundMessage(
            channel=self.channel_name,
            sender_id=sender_id,
            chat_id=sender_id if private else chat_id,
            content=content,
            metadata={"is_private": private},
        )
        response = await self._process_message(msg)
        return response.content if response else ""

    async def _is_addressed(self, channel: str, body: str) -> bool:
        if is_addressed(self.nickname, body):
            return True
        if not mentions(self.nickname, body):
            return False
        if self.mention_scheduler.evaluate(channel):
            return True
        if self.classifier is not None:
            return await self.classifier.is_aimed_at_bot(body)
        return False

    async def _ensure_seeded(self, channel: str) -> None:
        """Restore history from the message log the first time a channel is seen."""
        key = irc_lower(channel)
        if key in self._seeded:
            return
        self._seeded.add(key)
        if self.buffer.snapshot(channel, 1):
            return
        entries = await self.store.recent_messages(channel, self.buffer.capacity)
        if entries:
            self.buffer.seed(channel, [
                Message(channel=channel, sender=e.nick, body=e.message, timestamp=e.timestamp)
                for e in entries
            ])
            logger.debug(f"Restored {len(entries)} lines of history for {channel}")

    def _channel_lock(self, channel: str) -> asyncio.Lock:
        return self._channel_locks.setdefault(irc_lower(channel), asyncio.Lock())

    async def forget_channel(self, channel: str) -> None:
        """Drop per-channel state after leaving a channel, once its current turn is done."""
        async with self._channel_lock(channel):
            self.buffer.drop(channel)
            self._seeded.discard(irc_lower(channel))
        logger.debug(f"Dropped context for {channel}")

    # --- Orchestration ---

    async def orchestrate(self, channel: str, trigger: Message | None) -> OrchestrationOutcome:
        """
        Produce exactly one reply for a triggered conversation.

        The context snapshot is taken before the first suspension and the
        assistant turn is appended after the exchange; the per-channel lock
        keeps two turns for one channel from interleaving.
        """
        async with self._channel_lock(channel):
            return await self._orchestrate(channel, trigger)

    async def _orchestrate(self, channel: str, trigger: Message | None) -> OrchestrationOutcome:
        history = self.buffer.snapshot(channel, self.history_turns)
        try:
            messages = self.context.build_messages(history, channel, trigger)
            outcome = await self._run_agent_loop(messages)
        except OrchestrationLimitError as e:
            logger.warning(f"Orchestration in {channel} stopped: {e}")
            return OrchestrationOutcome(content=LIMIT_REPLY, rounds=e.rounds, degraded=True)
        except TransportError as e:
            logger.error(f"Reasoning service unavailable for {channel}: {e}")
            return self._failure_outcome(trigger)
        except Exception as e:
            logger.exception(f"Orchestration in {channel} failed: {e}")
            return self._failure_outcome(trigger)

        if not outcome.degraded:
            now = max(time.time(), history[-1].timestamp if history else 0.0)
            self.buffer.append(channel, Message(channel, self.nickname, outcome.content, now))
            await self.store.log_message(channel, self.nickname, outcome.content, now)
        preview = outcome.content[:120] + "..." if len(outcome.content) > 120 else outcome.content
        logger.info(f"Reply to {channel} after {outcome.rounds} round(s): {preview}")
        return outcome

    @staticmethod
    def _failure_outcome(trigger: Message | None) -> OrchestrationOutcome:
        text = TRANSPORT_FAILURE_REPLY
        if trigger is not None:
            text = f"{trigger.sender}: {text}"
        return OrchestrationOutcome(content=text, rounds=0, degraded=True)

    async def _run_agent_loop(self, messages: list[dict[str, Any]]) -> OrchestrationOutcome:
        """
        Bounded request/response state machine.

        Each round submits the conversation; a text answer ends the loop, a
        tool-call answer is dispatched and its results appended before the
        next round. The final round is sent without the tool catalog. If no
        text arrives within ``max_rounds`` rounds, OrchestrationLimitError.
        """
        tools_used: list[str] = []
        catalog = self.tools.get_definitions()

        for round_no in range(1, self.max_rounds + 1):
            offer_tools = round_no < self.max_rounds
            logger.debug(f"Round {round_no}/{self.max_rounds} (tools={'on' if offer_tools else 'off'})")

            response = await retry_transient(
                lambda: self.provider.chat(
                    messages=messages,
                    tools=catalog if offer_tools else None,
                    model=self.model,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                attempts=self.transport_retries + 1,
                timeout=self.api_timeout,
                label="reasoning service",
            )

            if not response.has_tool_calls:
                content = self._strip_think(response.content)
                if content is None:
                    return OrchestrationOutcome(EMPTY_REPLY, round_no, tools_used, degraded=True)
                return OrchestrationOutcome(content, round_no, tools_used)

            if not offer_tools:
                break

            messages = self.context.add_assistant_message(
                messages, response.content, self.context.tool_call_dicts(response.tool_calls),
            )
            attachments = []
            for tool_call in response.tool_calls:
                tools_used.append(tool_call.name)
                args_str = json.dumps(tool_call.arguments, ensure_ascii=False)
                logger.info(f"Tool call: {tool_call.name}({args_str[:200]})")
                result = await self.tools.dispatch(tool_call)
                if not result.ok:
                    logger.info(f"Tool {tool_call.name} failed ({result.reason}): {result.content}")
                messages = self.context.add_tool_result(
                    messages, tool_call.id, tool_call.name, result.to_message_content(),
                )
                attachments.extend(result.attachments)
            messages = self.context.add_images(messages, attachments)

        raise OrchestrationLimitError(self.max_rounds)
