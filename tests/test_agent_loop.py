import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from emulbot.agent.context import INTERJECT_TRIGGER
from emulbot.agent.interjection import InterjectionScheduler
from emulbot.agent.loop import (
    EMPTY_REPLY,
    LIMIT_REPLY,
    TOOL_PREPARE_SLACK,
    TRANSPORT_FAILURE_REPLY,
    AgentLoop,
)
from emulbot.agent.tools.base import ImageAttachment, Tool, ToolResult
from emulbot.agent.tools.registry import ToolRegistry
from emulbot.bus.events import InboundMessage
from emulbot.bus.queue import MessageBus
from emulbot.config.schema import InterjectionConfig, ToolsConfig
from emulbot.errors import TransportError
from emulbot.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from emulbot.providers.litellm_provider import LiteLLMProvider
from emulbot.utils.helpers import retry_budget


class FixedRandom:
    def __init__(self, value: float):
        self.value = value

    def random(self) -> float:
        return self.value


class ScriptedProvider(LLMProvider):
    """Replays responses in order and records every request."""

    def __init__(self, responses=None, default: LLMResponse | None = None):
        super().__init__()
        self.responses = list(responses or [])
        self.default = default or LLMResponse(content="ok")
        self.calls: list[dict[str, Any]] = []

    def get_default_model(self) -> str:
        return "test/default"

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools, "model": model})
        if self.responses:
            nxt = self.responses.pop(0)
            if isinstance(nxt, Exception):
                raise nxt
            return nxt
        return self.default


class AlwaysToolCallProvider(ScriptedProvider):
    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": list(messages), "tools": tools, "model": model})
        n = len(self.calls)
        return LLMResponse(
            content=None,
            tool_calls=[ToolCallRequest(id=f"c{n}", name="roll_dice", arguments={"dice_notation": "1d6"})],
            finish_reason="tool_calls",
        )


class DownProvider(ScriptedProvider):
    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": list(messages), "tools": tools, "model": model})
        raise TransportError("connection refused")


class FakeImageTool(Tool):
    @property
    def name(self) -> str:
        return "fetch_and_prepare_image"

    @property
    def description(self) -> str:
        return "fake image fetch"

    @property
    def parameters(self) -> dict[str, Any]:
        return {"type": "object", "properties": {"url": {"type": "string"}}, "required": ["url"]}

    async def execute(self, url: str, **kwargs: Any) -> ToolResult:
        return ToolResult.success(
            "Image fetched successfully.",
            attachments=[ImageAttachment("image/png", "aGVsbG8=")],
        )


def _make_loop(store, provider, *, classifier=False, scheduler=None, **kwargs) -> AgentLoop:
    return AgentLoop(
        bus=kwargs.pop("bus", MessageBus()),
        provider=provider,
        store=store,
        nickname="Emul",
        interjection_config=InterjectionConfig(mention_classifier=classifier),
        scheduler=scheduler or InterjectionScheduler(0.02, rng=FixedRandom(0.99)),
        mention_scheduler=InterjectionScheduler(0.2, rng=FixedRandom(0.99)),
        transport_retries=0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_addressed_message_gets_reply_and_is_remembered(store):
    provider = ScriptedProvider([LLMResponse(content="hi alice~")])
    loop = _make_loop(store, provider)

    reply = await loop.process_direct("Emul: hello!", sender_id="alice", chat_id="#test")

    assert reply == "hi alice~"
    request = provider.calls[0]["messages"]
    assert request[0]["role"] == "system"
    assert "Channel: #test" in request[0]["content"]
    assert request[-1] == {"role": "user", "content": "Current trigger from alice:\nEmul: hello!"}
    history = loop.buffer.snapshot("#test", 10)
    assert [(m.sender, m.body) for m in history] == [("alice", "Emul: hello!"), ("Emul", "hi alice~")]
    logged = await store.recent_messages("#test", 10)
    assert [e.message for e in logged] == ["Emul: hello!", "hi alice~"]


@pytest.mark.asyncio
async def test_unaddressed_message_consults_scheduler_exactly_once(store):
    provider = ScriptedProvider()
    loop = _make_loop(store, provider)

    assert await loop.process_direct("just chatting", sender_id="bob", chat_id="#test") == ""
    assert loop.scheduler.state("#test").messages_since_fire == 1

    await loop.process_direct("Emul, what do you think?", sender_id="bob", chat_id="#test")
    assert loop.scheduler.state("#test").messages_since_fire == 1
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_forced_interjection_uses_interject_trigger(store):
    provider = ScriptedProvider([LLMResponse(content="Did someone say cake?")])
    loop = _make_loop(store, provider)
    loop.scheduler.force_next("#test")

    reply = await loop.process_direct("I baked a cake", sender_id="bob", chat_id="#test")

    assert reply == "Did someone say cake?"
    messages = provider.calls[0]["messages"]
    assert messages[-1]["content"] == INTERJECT_TRIGGER
    assert messages[-2]["content"] == "bob: I baked a cake"


@pytest.mark.asyncio
async def test_own_and_empty_messages_never_trigger(store):
    provider = ScriptedProvider()
    loop = _make_loop(store, provider)
    loop.scheduler.force_next()

    assert await loop.process_direct("Emul: talking to myself", sender_id="Emul", chat_id="#test") == ""
    assert await loop.process_direct("   ", sender_id="bob", chat_id="#test") == ""
    assert provider.calls == []


@pytest.mark.asyncio
async def test_tool_round_trip(store):
    provider = ScriptedProvider([
        LLMResponse(
            content=None,
            tool_calls=[ToolCallRequest(id="c1", name="roll_dice", arguments={"dice_notation": "3d6+2"})],
            finish_reason="tool_calls",
        ),
        LLMResponse(content="The dice have spoken!"),
    ])
    loop = _make_loop(store, provider)

    reply = await loop.process_direct("Emul: roll 3d6+2 for me", sender_id="alice", chat_id="#dnd")

    assert reply == "The dice have spoken!"
    assert len(provider.calls) == 2
    first_tools = provider.calls[0]["tools"]
    assert {t["function"]["name"] for t in first_tools} == {
        "roll_dice", "download_torrent", "fetch_and_prepare_image",
    }
    second = provider.calls[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["function"]["name"] == "roll_dice"
    assert second[-1]["role"] == "tool"
    assert second[-1]["tool_call_id"] == "c1"
    assert second[-1]["content"].startswith("Rolled 3d6+2: [")


@pytest.mark.asyncio
async def test_multiple_tool_calls_each_get_one_result(store):
    provider = ScriptedProvider([
        LLMResponse(
            content="",
            tool_calls=[
                ToolCallRequest(id="a", name="roll_dice", arguments={"dice_notation": "1d4"}),
                ToolCallRequest(id="b", name="launch_missiles", arguments={}),
            ],
        ),
        LLMResponse(content="done"),
    ])
    loop = _make_loop(store, provider)

    assert await loop.process_direct("Emul: go", sender_id="alice", chat_id="#test") == "done"

    tool_turns = [m for m in provider.calls[1]["messages"] if m["role"] == "tool"]
    assert [t["tool_call_id"] for t in tool_turns] == ["a", "b"]
    assert tool_turns[1]["content"].startswith("Error (unsupported_tool)")


@pytest.mark.asyncio
async def test_tool_calls_forever_hit_round_limit(store):
    provider = AlwaysToolCallProvider()
    loop = _make_loop(store, provider, max_rounds=3)

    reply = await loop.process_direct("Emul: roll forever", sender_id="alice", chat_id="#test")

    assert reply == LIMIT_REPLY
    assert len(provider.calls) == 3
    assert provider.calls[0]["tools"] is not None
    assert provider.calls[1]["tools"] is not None
    assert provider.calls[2]["tools"] is None
    assert [m.sender for m in loop.buffer.snapshot("#test", 10)] == ["alice"]


@pytest.mark.asyncio
async def test_single_round_limit_offers_no_tools(store):
    provider = ScriptedProvider([LLMResponse(content="plain answer")])
    loop = _make_loop(store, provider, max_rounds=1)

    assert await loop.process_direct("Emul: hi", sender_id="alice", chat_id="#test") == "plain answer"
    assert provider.calls[0]["tools"] is None


@pytest.mark.asyncio
async def test_transport_failure_degrades_to_error_reply(store):
    provider = DownProvider()
    loop = _make_loop(store, provider)

    reply = await loop.process_direct("Emul: are you there?", sender_id="alice", chat_id="#test")

    assert reply == f"alice: {TRANSPORT_FAILURE_REPLY}"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_transport_failure_is_retried(store):
    provider = ScriptedProvider([TransportError("blip"), LLMResponse(content="back again")])
    loop = _make_loop(store, provider)
    loop.transport_retries = 1

    reply = await loop.process_direct("Emul: ping", sender_id="alice", chat_id="#test")

    assert reply == "back again"
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_empty_model_reply_is_degraded(store):
    provider = ScriptedProvider([LLMResponse(content="<think>hmm</think>")])
    loop = _make_loop(store, provider)

    reply = await loop.process_direct("Emul: say nothing", sender_id="alice", chat_id="#test")

    assert reply == EMPTY_REPLY


@pytest.mark.asyncio
async def test_image_attachments_reach_next_round(store):
    tools = ToolRegistry()
    tools.register(FakeImageTool())
    provider = ScriptedProvider([
        LLMResponse(
            content=None,
            tool_calls=[ToolCallRequest(id="i1", name="fetch_and_prepare_image", arguments={"url": "https://x/y.png"})],
        ),
        LLMResponse(content="Cute cat!"),
    ])
    loop = _make_loop(store, provider, tools=tools)

    assert await loop.process_direct("Emul: look https://x/y.png", sender_id="alice", chat_id="#test") == "Cute cat!"

    last = provider.calls[1]["messages"][-1]
    assert last["role"] == "user"
    assert last["content"][1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,aGVsbG8="}}


@pytest.mark.asyncio
async def test_mention_classifier_can_address_the_bot(store):
    provider = ScriptedProvider([
        LLMResponse(content="respond"),
        LLMResponse(content="I think it's great!"),
    ])
    loop = _make_loop(store, provider, classifier=True)

    reply = await loop.process_direct("I wonder what Emul thinks", sender_id="bob", chat_id="#test")

    assert reply == "I think it's great!"
    assert provider.calls[0]["tools"] is None
    assert loop.scheduler.state("#test").messages_since_fire == 0


@pytest.mark.asyncio
async def test_mention_classifier_says_mention(store):
    provider = ScriptedProvider([LLMResponse(content="mention")])
    loop = _make_loop(store, provider, classifier=True)

    assert await loop.process_direct("I told Emul about it yesterday", sender_id="bob", chat_id="#test") == ""
    assert len(provider.calls) == 1
    assert loop.scheduler.state("#test").messages_since_fire == 1


@pytest.mark.asyncio
async def test_history_is_seeded_from_message_log(store):
    await store.log_message("#test", "bob", "earlier line", 1.0)
    await store.log_message("#test", "Emul", "earlier reply", 2.0)
    provider = ScriptedProvider([LLMResponse(content="I remember!")])
    loop = _make_loop(store, provider)

    await loop.process_direct("Emul: remember?", sender_id="alice", chat_id="#test")

    messages = provider.calls[0]["messages"]
    assert {"role": "user", "content": "bob: earlier line"} in messages
    assert {"role": "assistant", "content": "earlier reply"} in messages


@pytest.mark.asyncio
async def test_private_message_goes_to_command_handler(store):
    provider = ScriptedProvider()
    loop = _make_loop(store, provider)

    assert await loop.process_direct("!admins", sender_id="Baughn", private=True) == "Registered admins: baughn"
    assert await loop.process_direct("!join #evil", sender_id="mallory", private=True) == (
        "Sorry, I only take commands from registered admins, desu~"
    )
    assert provider.calls == []
    assert store.list_channels() == set()


@pytest.mark.asyncio
async def test_part_command_drops_channel_context(store):
    loop = _make_loop(store, ScriptedProvider())
    await loop.process_direct("!join #test", sender_id="Baughn", private=True)
    await loop.process_direct("just chatting", sender_id="bob", chat_id="#test")
    assert loop.buffer.has_channel("#test")

    reply = await loop.process_direct("!part #test", sender_id="Baughn", private=True)

    assert reply.startswith("Got it! Leaving #test")
    assert not loop.buffer.has_channel("#test")


@pytest.mark.asyncio
async def test_end_to_end_over_bus(store):
    bus = MessageBus()
    provider = ScriptedProvider([LLMResponse(content="Hello from Emul!")])
    loop = _make_loop(store, provider, bus=bus)
    task = asyncio.create_task(loop.run())
    try:
        await bus.publish_inbound(InboundMessage(
            channel="irc", sender_id="Baughn", chat_id="Baughn", content="!join #test",
            metadata={"is_private": True},
        ))
        ack = await asyncio.wait_for(bus.consume_outbound(), timeout=5)
        assert ack.chat_id == "Baughn"
        assert "#test" in ack.content
        assert store.list_channels() == {"#test"}

        await bus.publish_inbound(InboundMessage(
            channel="irc", sender_id="alice", chat_id="#test", content="Emul: hi!",
        ))
        out = await asyncio.wait_for(bus.consume_outbound(), timeout=5)
        assert out.chat_id == "#test"
        assert out.content == "Hello from Emul!"
    finally:
        loop.stop()
        await asyncio.wait_for(task, timeout=5)


class SlowProvider(ScriptedProvider):
    def __init__(self):
        super().__init__()
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}
        self.total_active = 0
        self.total_peak = 0

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        channel = next(
            line.split(": ", 1)[1]
            for line in messages[0]["content"].splitlines()
            if line.startswith("Channel: ")
        )
        self.active[channel] = self.active.get(channel, 0) + 1
        self.peak[channel] = max(self.peak.get(channel, 0), self.active[channel])
        self.total_active += 1
        self.total_peak = max(self.total_peak, self.total_active)
        await asyncio.sleep(0.1)
        self.active[channel] -= 1
        self.total_active -= 1
        return LLMResponse(content=f"reply in {channel}")


@pytest.mark.asyncio
async def test_one_channel_never_races_itself_but_channels_run_in_parallel(store):
    bus = MessageBus()
    provider = SlowProvider()
    loop = _make_loop(store, provider, bus=bus)
    task = asyncio.create_task(loop.run())
    try:
        for channel, text in (("#a", "Emul: one"), ("#a", "Emul: two"), ("#b", "Emul: three")):
            await bus.publish_inbound(InboundMessage(channel="irc", sender_id="alice", chat_id=channel, content=text))
        replies = [await asyncio.wait_for(bus.consume_outbound(), timeout=5) for _ in range(3)]
    finally:
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

    assert sorted(r.chat_id for r in replies) == ["#a", "#a", "#b"]
    assert provider.peak["#a"] == 1
    assert provider.total_peak == 2


@pytest.mark.asyncio
async def test_unexpected_provider_error_still_replies_once(store):
    bus = MessageBus()
    provider = ScriptedProvider([RuntimeError("boom")])
    loop = _make_loop(store, provider, bus=bus)
    task = asyncio.create_task(loop.run())
    try:
        await bus.publish_inbound(InboundMessage(channel="irc", sender_id="alice", chat_id="#t", content="Emul: hi"))
        out = await asyncio.wait_for(bus.consume_outbound(), timeout=5)
    finally:
        loop.stop()
        await asyncio.wait_for(task, timeout=5)

    assert out.chat_id == "#t"
    assert out.content == f"alice: {TRANSPORT_FAILURE_REPLY}"
    assert bus.outbound_size == 0
    assert [m.sender for m in loop.buffer.snapshot("#t", 10)] == ["alice"]


@pytest.mark.asyncio
async def test_malformed_litellm_response_degrades_to_error_reply(store, monkeypatch):
    async def no_choices(**kwargs):
        return SimpleNamespace(choices=[], usage=None)

    monkeypatch.setattr("emulbot.providers.litellm_provider.acompletion", no_choices)
    loop = _make_loop(store, LiteLLMProvider())

    reply = await loop.process_direct("Emul: hi", sender_id="alice", chat_id="#t")

    assert reply == f"alice: {TRANSPORT_FAILURE_REPLY}"


class GatedProvider(ScriptedProvider):
    def __init__(self):
        super().__init__(default=LLMResponse(content="late reply"))
        self.release = asyncio.Event()

    async def chat(self, messages, tools=None, model=None, max_tokens=4096, temperature=0.7):
        self.calls.append({"messages": [dict(m) for m in messages], "tools": tools, "model": model})
        await self.release.wait()
        return self.default


@pytest.mark.asyncio
async def test_part_waits_for_the_channel_turn_in_progress(store):
    provider = GatedProvider()
    loop = _make_loop(store, provider)
    await loop.process_direct("!join #test", sender_id="Baughn", private=True)

    turn = asyncio.create_task(loop.process_direct("Emul: hi", sender_id="alice", chat_id="#test"))
    for _ in range(100):
        if provider.calls:
            break
        await asyncio.sleep(0.01)
    part = asyncio.create_task(loop.process_direct("!part #test", sender_id="Baughn", private=True))
    await asyncio.sleep(0.05)
    assert not part.done()

    provider.release.set()
    assert await turn == "late reply"
    assert (await part).startswith("Got it! Leaving #test")
    assert not loop.buffer.has_channel("#test")

    await loop.process_direct("Emul: again", sender_id="alice", chat_id="#test")
    assert {"role": "assistant", "content": "late reply"} in provider.calls[1]["messages"]


@pytest.mark.asyncio
async def test_tool_timeout_leaves_room_for_fetch_retries(store):
    no_retries = _make_loop(store, ScriptedProvider())
    with_retries = AgentLoop(
        bus=MessageBus(),
        provider=ScriptedProvider(),
        store=store,
        nickname="Emul",
        transport_retries=2,
        tools_config=ToolsConfig(timeout=30.0, image_fetch_timeout=15.0),
    )

    assert no_retries.tools.timeout == 30.0
    assert with_retries.tools.timeout == retry_budget(15.0, 3) + TOOL_PREPARE_SLACK
    assert with_retries.tools.timeout > 15.0 * 3
