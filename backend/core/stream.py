"""
Event Stream Multiplexer
========================
Live, best-effort fan-out of agent progress, scoped per investment id.

  publish(investment_id, event, data) → put_nowait on every subscriber queue → SSE frame

- No replay: a subscriber only sees events published after it joined.
- A subscriber whose queue is full is dropped; the others are unaffected.
- Connections end on disconnect or after max_lifetime_seconds.
- Purely observational: nothing here touches the ledger.

One broker is created per process in the app lifespan and closed at shutdown.
"""
import asyncio
import json
import logging
import threading
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "thinking",
    "text",
    "tool_start",
    "tool_progress",
    "tool_result",
    "status",
    "result",
    "error",
    "done",
})


# queue sentinel that ends a blocked stream
CLOSED = object()


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


class Subscriber:
    def __init__(self, investment_id: str, max_queue: int):
        self.investment_id = investment_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.connected_at = time.monotonic()
        self.closed = False


class StreamBroker:
    def __init__(self, max_queue: int = 256, max_lifetime_seconds: float = 900, keepalive_seconds: float = 15):
        self.max_queue = max_queue
        self.max_lifetime_seconds = max_lifetime_seconds
        self.keepalive_seconds = keepalive_seconds
        self._subscribers: dict[str, set[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, investment_id: str) -> Subscriber:
        sub = Subscriber(investment_id, self.max_queue)
        with self._lock:
            self._subscribers.setdefault(investment_id, set()).add(sub)
        logger.info(f"[{investment_id}] Stream subscriber joined ({self.subscriber_count(investment_id)} live)")
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        sub.closed = True
        with self._lock:
            subs = self._subscribers.get(sub.investment_id)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.investment_id]

    def subscriber_count(self, investment_id: Optional[str] = None) -> int:
        with self._lock:
            if investment_id is not None:
                return len(self._subscribers.get(investment_id, ()))
            return sum(len(s) for s in self._subscribers.values())

    def publish(self, investment_id: str, event: str, data: Optional[dict] = None) -> int:
        """Deliver to every current subscriber. Returns how many received it."""
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown stream event '{event}'")
        with self._lock:
            targets = list(self._subscribers.get(investment_id, ()))
        delivered = 0
        for sub in targets:
            try:
                sub.queue.put_nowait((event, data or {}))
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"[{investment_id}] Dropping slow stream subscriber")
                self.unsubscribe(sub)
        return delivered

    async def stream(
        self,
        sub: Subscriber,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """SSE frames for one subscriber, starting with `connected`."""
        deadline = sub.connected_at + self.max_lifetime_seconds
        try:
            yield format_sse("connected", {})
            while not sub.closed:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(sub.queue.get(), timeout=min(self.keepalive_seconds, remaining))
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        break
                    if time.monotonic() < deadline:
                        yield ": keepalive\n\n"
                    continue
                if item is CLOSED:
                    break
                yield format_sse(*item)
        finally:
            self.unsubscribe(sub)

    def close(self) -> None:
        with self._lock:
            subs = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        for sub in subs:
            sub.closed = True
            try:
                sub.queue.put_nowait(CLOSED)
            except asyncio.QueueFull:
                # a full queue wakes the reader anyway
                pass
        logger.info(f"Stream broker closed ({len(subs)} subscribers released)")
