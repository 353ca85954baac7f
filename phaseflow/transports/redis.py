"""Redis stream relay so observers in other processes can follow instances."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import LifecycleEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

STREAM_FIELD = "event"


class RedisTransport(BaseTransport[str]):
    """Append events to one capped Redis stream per topic.

    Streams keep their entries after delivery, so a late observer can replay
    an instance's history by subscribing with ``from_start=True``. Raw
    messages are stream entry ids.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        max_len: int = 10_000,
        from_start: bool = False,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.max_len = max_len
        self.from_start = from_start
        self._redis: Optional[Any] = None

    @staticmethod
    def stream_key(topic: str) -> str:
        return f"phaseflow:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.debug(f"Connected event relay to redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: LifecycleEvent) -> None:
        """Append the event, trimming the stream to roughly ``max_len`` entries."""
        if not self._redis:
            await self.connect()

        await self._redis.xadd(
            self.stream_key(topic),
            {STREAM_FIELD: event.to_json()},
            maxlen=self.max_len,
            approximate=True,
        )

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, LifecycleEvent]]:
        """Yield ``(entry_id, event)`` pairs in stream order."""
        if not self._redis:
            await self.connect()

        key = self.stream_key(topic)
        last_id = "0-0" if self.from_start else "$"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            response = await self._redis.xread({key: last_id}, count=100, block=1000)
            for _stream, entries in response or []:
                for entry_id, fields in entries:
                    last_id = entry_id
                    try:
                        event = LifecycleEvent.from_json(fields[STREAM_FIELD])
                    except (KeyError, ValidationError) as e:
                        logger.warning(f"Skipping malformed entry {entry_id} on {key}: {e}")
                        continue
                    yield entry_id, event
