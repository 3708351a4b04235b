import pytest

from emulbot.agent.buffer import ContextBuffer, Message


def _msg(i: int, channel: str = "#test", ts: float | None = None) -> Message:
    return Message(channel=channel, sender=f"user{i % 3}", body=f"line {i}", timestamp=float(i) if ts is None else ts)


def test_keeps_last_capacity_messages_in_order():
    buf = ContextBuffer(capacity=5)
    for i in range(8):
        buf.append("#test", _msg(i))

    snap = buf.snapshot("#test", 100)

    assert [m.body for m in snap] == [f"line {i}" for i in range(3, 8)]


def test_snapshot_limits_to_most_recent_turns():
    buf = ContextBuffer(capacity=10)
    for i in range(6):
        buf.append("#test", _msg(i))

    assert [m.body for m in buf.snapshot("#test", 2)] == ["line 4", "line 5"]
    assert buf.snapshot("#test", 0) == []


def test_channels_are_independent_and_case_insensitive():
    buf = ContextBuffer(capacity=3)
    buf.append("#Foo", _msg(1, "#Foo"))
    buf.append("#bar", _msg(2, "#bar"))
    buf.append("#foo", _msg(3, "#foo"))

    assert [m.body for m in buf.snapshot("#FOO", 10)] == ["line 1", "line 3"]
    assert [m.body for m in buf.snapshot("#bar", 10)] == ["line 2"]
    assert buf.snapshot("#unknown", 10) == []
    assert len(buf) == 2


def test_timestamps_never_go_backwards():
    buf = ContextBuffer(capacity=5)
    buf.append("#test", _msg(1, ts=100.0))
    buf.append("#test", _msg(2, ts=50.0))

    snap = buf.snapshot("#test", 5)

    assert [m.timestamp for m in snap] == [100.0, 100.0]
    assert snap[1].body == "line 2"


def test_snapshot_is_a_copy():
    buf = ContextBuffer(capacity=5)
    buf.append("#test", _msg(1))
    snap = buf.snapshot("#test", 5)
    buf.append("#test", _msg(2))

    assert len(snap) == 1


def test_seed_only_fills_an_empty_ring():
    buf = ContextBuffer(capacity=3)
    buf.seed("#test", [_msg(i) for i in range(5)])
    assert [m.body for m in buf.snapshot("#test", 10)] == ["line 2", "line 3", "line 4"]

    buf.seed("#test", [_msg(9)])
    assert [m.body for m in buf.snapshot("#test", 10)] == ["line 2", "line 3", "line 4"]


def test_drop_forgets_channel():
    buf = ContextBuffer(capacity=3)
    buf.append("#test", _msg(1))
    buf.drop("#TEST")

    assert not buf.has_channel("#test")
    assert buf.snapshot("#test", 3) == []


def test_rejects_zero_capacity():
    with pytest.raises(ValueError):
        ContextBuffer(capacity=0)
