"""
Event stream multiplexer: per-investment fan-out, backpressure, SSE framing.

Run: python -m pytest tests/test_stream.py -v
"""

import asyncio
import json

import pytest

from conftest import drain_queue
from core.stream import StreamBroker, format_sse


def parse_frame(frame: str) -> tuple[str, dict]:
    lines = frame.strip().split("\n")
    return lines[0].removeprefix("event: "), json.loads(lines[1].removeprefix("data: "))


@pytest.mark.asyncio
async def test_events_arrive_in_publish_order(broker):
    sub = broker.subscribe("inv-1")
    broker.publish("inv-1", "thinking", {"text": "hmm"})
    broker.publish("inv-1", "tool_start", {"tool": "get_rates"})
    broker.publish("inv-1", "tool_result", {"tool": "get_rates"})
    broker.publish("inv-1", "done", {})

    events = [e for e, _ in drain_queue(sub)]
    assert events == ["thinking", "tool_start", "tool_result", "done"]


@pytest.mark.asyncio
async def test_scoped_per_investment(broker):
    a = broker.subscribe("inv-a")
    b = broker.subscribe("inv-b")
    assert broker.publish("inv-a", "status", {"description": "only a"}) == 1
    assert len(drain_queue(a)) == 1
    assert drain_queue(b) == []


@pytest.mark.asyncio
async def test_late_subscriber_sees_no_history(broker):
    early = broker.subscribe("inv-1")
    broker.publish("inv-1", "text", {"text": "first"})
    late = broker.subscribe("inv-1")
    broker.publish("inv-1", "text", {"text": "second"})

    assert [d["text"] for _, d in drain_queue(early)] == ["first", "second"]
    assert [d["text"] for _, d in drain_queue(late)] == ["second"]


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_a_no_op(broker):
    assert broker.publish("nobody", "status", {"description": "x"}) == 0


@pytest.mark.asyncio
async def test_unknown_event_rejected(broker):
    with pytest.raises(ValueError):
        broker.publish("inv-1", "heartbeat", {})


@pytest.mark.asyncio
async def test_full_subscriber_is_dropped_others_unaffected():
    broker = StreamBroker(max_queue=2, max_lifetime_seconds=5, keepalive_seconds=0.05)
    slow = broker.subscribe("inv-1")
    broker.publish("inv-1", "text", {"n": 1})
    broker.publish("inv-1", "text", {"n": 2})
    fast = broker.subscribe("inv-1")

    delivered = broker.publish("inv-1", "text", {"n": 3})

    assert delivered == 1
    assert slow.closed
    assert broker.subscriber_count("inv-1") == 1
    assert [d["n"] for _, d in drain_queue(fast)] == [3]


@pytest.mark.asyncio
async def test_unsubscribe_cleans_up(broker):
    sub = broker.subscribe("inv-1")
    broker.unsubscribe(sub)
    assert broker.subscriber_count() == 0
    # second unsubscribe is harmless
    broker.unsubscribe(sub)


@pytest.mark.asyncio
async def test_stream_starts_with_connected_then_frames(broker):
    sub = broker.subscribe("inv-1")
    broker.publish("inv-1", "status", {"description": "Dispatching execute to agent"})
    gen = broker.stream(sub)

    first = await gen.__anext__()
    second = await gen.__anext__()
    await gen.aclose()

    assert first == "event: connected\ndata: {}\n\n"
    assert parse_frame(second) == ("status", {"description": "Dispatching execute to agent"})
    assert broker.subscriber_count("inv-1") == 0


@pytest.mark.asyncio
async def test_stream_sends_keepalive_when_idle(broker):
    gen = broker.stream(broker.subscribe("inv-1"))
    await gen.__anext__()
    assert await gen.__anext__() == ": keepalive\n\n"
    await gen.aclose()


@pytest.mark.asyncio
async def test_stream_ends_at_max_lifetime():
    broker = StreamBroker(max_queue=4, max_lifetime_seconds=0.2, keepalive_seconds=0.05)
    sub = broker.subscribe("inv-1")

    frames = [f async for f in broker.stream(sub)]

    assert frames[0].startswith("event: connected")
    assert sub.closed
    assert broker.subscriber_count() == 0


@pytest.mark.asyncio
async def test_stream_ends_on_disconnect(broker):
    async def gone():
        return True

    sub = broker.subscribe("inv-1")
    frames = [f async for f in broker.stream(sub, gone)]
    assert len(frames) == 1
    assert broker.subscriber_count() == 0


@pytest.mark.asyncio
async def test_close_releases_open_streams():
    broker = StreamBroker(max_queue=4, max_lifetime_seconds=60, keepalive_seconds=30)
    sub = broker.subscribe("inv-1")
    collected = asyncio.create_task(_collect(broker, sub))
    await asyncio.sleep(0.01)

    broker.close()
    frames = await asyncio.wait_for(collected, timeout=1)

    assert frames[0].startswith("event: connected")
    assert len(frames) == 1
    assert broker.subscriber_count() == 0


async def _collect(broker, sub):
    return [f async for f in broker.stream(sub)]


def test_format_sse():
    assert format_sse("error", {"message": "boom"}) == 'event: error\ndata: {"message": "boom"}\n\n'
