"""In-process lifecycle transport."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..events import LifecycleEvent
from .base import BaseTransport

RawEvent = Tuple[str, LifecycleEvent]


class InMemoryTransport(BaseTransport[RawEvent]):
    """Per-topic queues in local memory, for tests and single-process use.

    Each event is delivered to one subscriber. Subscribers wait on a signal
    set by :meth:`publish` rather than polling.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawEvent]] = defaultdict(deque)
        self._published: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)

    async def publish(self, topic: str, event: LifecycleEvent) -> None:
        self._queues[topic].append((event.to_json(), event))
        self._published[topic].set()

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, LifecycleEvent]]:
        loop = asyncio.get_running_loop()
        stop_at = None if lifespan is None else loop.time() + lifespan
        queue = self._queues[topic]
        published = self._published[topic]

        while True:
            if queue:
                raw = queue.popleft()
                yield raw, raw[1]
                continue
            published.clear()
            remaining = None if stop_at is None else stop_at - loop.time()
            if remaining is not None and remaining <= 0:
                return
            try:
                await asyncio.wait_for(published.wait(), remaining)
            except asyncio.TimeoutError:
                return

    async def ack(self, raw_message: RawEvent) -> None:
        # popped on delivery, nothing left to confirm
        pass
