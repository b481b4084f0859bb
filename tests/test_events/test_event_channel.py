import pytest

from deckhand.events import EventChannel, EventType


async def collect(channel: EventChannel) -> list:
    return [event async for event in channel]


@pytest.mark.asyncio
async def test_sequence_numbers_start_at_one_and_are_contiguous():
    channel = EventChannel("t1")
    channel.emit(EventType.TEXT, text="a")
    channel.emit(EventType.TEXT, text="b")
    channel.emit(EventType.DONE, reason="finish")
    channel.close()

    events = await collect(channel)

    assert [e.seq for e in events] == [1, 2, 3]
    assert [e.thread_id for e in events] == ["t1"] * 3
    assert events[-1].is_terminal
    assert channel.last_seq == 3


@pytest.mark.asyncio
async def test_emit_after_close_is_ignored():
    channel = EventChannel("t1")
    channel.close()
    channel.close()

    assert channel.emit(EventType.TEXT, text="late") is None
    assert await collect(channel) == []
    assert channel.closed


@pytest.mark.asyncio
async def test_forward_renumbers_child_events_and_keeps_depth():
    parent = EventChannel("parent")
    child = EventChannel("child", parent_id="call_7", depth=1)

    parent.emit(EventType.SUBAGENT_START, name="general-purpose")
    child_event = child.emit(EventType.TEXT, text="from child")
    parent.forward(child_event, "call_7")
    parent.close()

    events = await collect(parent)

    assert [e.seq for e in events] == [1, 2]
    forwarded = events[1]
    assert forwarded.thread_id == "child"
    assert forwarded.parent_id == "call_7"
    assert forwarded.depth == 1
    assert forwarded.to_dict()["data"] == {"text": "from child"}
