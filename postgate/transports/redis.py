"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import TransitionEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawEvent = Tuple[str, str]


class RedisTransport(BaseTransport[RawEvent]):
    """Redis-based transport using lists as queues."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _queue(topic: str) -> str:
        return f"postgate:{topic}"

    async def publish(self, topic: str, event: TransitionEvent) -> None:
        """Publish event to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawEvent, TransitionEvent]]:
        """Subscribe to events from Redis queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, event_json = result
                try:
                    event = TransitionEvent.from_json(event_json)
                except ValidationError as e:
                    logger.error(f"Dropping unparseable event on {queue_name}: {e}")
                    continue
                yield (topic, event_json), event

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: RawEvent) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: RawEvent, requeue: bool = True) -> None:
        """Push the event back onto the consuming end of its queue."""
        if requeue and self._redis:
            topic, event_json = raw_message
            await self._redis.rpush(self._queue(topic), event_json)
