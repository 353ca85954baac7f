"""Lifecycle event fan-out for observers.

Every subscriber owns a bounded queue drained by its own pump task, so a
slow or crashing observer can only lose its own events. The transport relay
is fed the same way. The state store
stays the authoritative record; events are best-effort notifications.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from .constants import DEFAULT_EVENT_QUEUE_SIZE, EVENT_TOPIC_PREFIX
from .contracts import EventType, LifecycleEvent
from .transports import BaseTransport

logger = logging.getLogger(__name__)

EventHandler = Callable[[LifecycleEvent], Union[None, Awaitable[None]]]

ALL_INSTANCES = "*"

TERMINAL_EVENTS = frozenset(
    [
        EventType.INSTANCE_COMPLETED,
        EventType.INSTANCE_FAILED,
        EventType.INSTANCE_CANCELLED,
    ]
)


class _Subscriber:
    def __init__(self, instance_id: str, handler: EventHandler, queue_size: int) -> None:
        self.instance_id = instance_id
        self.handler = handler
        self.queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None

    def matches(self, event: LifecycleEvent) -> bool:
        return self.instance_id in (ALL_INSTANCES, event.instance_id)


class EventEmitter:
    """Broadcasts :class:`LifecycleEvent` objects to subscribers and a relay."""

    def __init__(
        self,
        queue_size: int = DEFAULT_EVENT_QUEUE_SIZE,
        transport: Optional[BaseTransport] = None,
    ) -> None:
        self._queue_size = queue_size
        self._transport = transport
        self._subscribers: List[_Subscriber] = []
        self._sequences: Dict[str, int] = defaultdict(int)
        self._relay: Optional[_Subscriber] = None
        if transport is not None:
            self._relay = _Subscriber(ALL_INSTANCES, self._publish, queue_size)

    def subscribe(self, instance_id: str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for one instance, or ``"*"`` for all.

        Handlers may be plain functions or coroutine functions. Returns a
        callable that removes the subscription.
        """
        subscriber = _Subscriber(instance_id, handler, self._queue_size)
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
            if subscriber.task is not None:
                subscriber.task.cancel()

        return unsubscribe

    async def stream(
        self, instance_id: str = ALL_INSTANCES, until_terminal: bool = True
    ) -> AsyncIterator[LifecycleEvent]:
        """Yield events as they arrive.

        For a single instance the stream ends after its terminal event
        unless ``until_terminal`` is false.
        """
        queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue()
        unsubscribe = self.subscribe(instance_id, queue.put_nowait)
        try:
            while True:
                event = await queue.get()
                yield event
                if (
                    until_terminal
                    and instance_id != ALL_INSTANCES
                    and event.type in TERMINAL_EVENTS
                ):
                    break
        finally:
            unsubscribe()

    async def emit(
        self,
        event_type: EventType,
        instance_id: str,
        phase_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> LifecycleEvent:
        """Build, sequence and deliver an event."""
        self._sequences[instance_id] += 1
        event = LifecycleEvent(
            type=event_type,
            instance_id=instance_id,
            phase_id=phase_id,
            sequence=self._sequences[instance_id],
            payload=payload or {},
        )
        logger.debug(
            f"Event {event.type.value} #{event.sequence} for instance {instance_id}"
            + (f" phase {phase_id}" if phase_id else "")
        )

        for subscriber in list(self._subscribers):
            if not subscriber.matches(event):
                continue
            self._ensure_pump(subscriber)
            try:
                subscriber.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping {event.type.value} event for instance {instance_id}: "
                    "subscriber queue is full"
                )

        if self._relay is not None:
            self._ensure_pump(self._relay)
            try:
                self._relay.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropping {event.type.value} event for instance {instance_id}: "
                    "relay queue is full"
                )
        return event

    def forget(self, instance_id: str) -> None:
        """Drop the sequence counter of a finished instance."""
        self._sequences.pop(instance_id, None)

    async def _publish(self, event: LifecycleEvent) -> None:
        try:
            await self._transport.publish(f"{EVENT_TOPIC_PREFIX}.{event.instance_id}", event)
        except Exception as e:
            logger.warning(f"Failed to relay event {event.event_id}: {e}")

    async def drain(self) -> None:
        """Wait until every subscriber has processed its queued events."""
        for subscriber in self._pumped():
            await subscriber.queue.join()

    async def aclose(self) -> None:
        """Stop all pump tasks and disconnect the relay transport."""
        tasks = [s.task for s in self._pumped()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._subscribers.clear()
        if self._transport is not None:
            await self._transport.disconnect()

    def _pumped(self) -> List[_Subscriber]:
        subscribers = list(self._subscribers)
        if self._relay is not None:
            subscribers.append(self._relay)
        return [s for s in subscribers if s.task is not None]

    def _ensure_pump(self, subscriber: _Subscriber) -> None:
        if subscriber.task is None:
            subscriber.task = asyncio.create_task(self._pump(subscriber))

    async def _pump(self, subscriber: _Subscriber) -> None:
        while True:
            event = await subscriber.queue.get()
            try:
                result = subscriber.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Event handler failed on {event.type.value} for instance "
                    f"{event.instance_id}: {e}"
                )
            finally:
                subscriber.queue.task_done()
