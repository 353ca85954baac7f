"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import LifecycleEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, LifecycleEvent]]):
    """Simple in-process queue for unit tests."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, LifecycleEvent]]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: LifecycleEvent) -> None:
        """Publish event to in-memory queue."""
        raw = (event.to_json(), event)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, LifecycleEvent], LifecycleEvent]]:
        """Subscribe to events from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.05)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
