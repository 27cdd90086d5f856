"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import QueueMessage
from ..errors import TransportError
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based transport using the reliable queue pattern.

    Messages are atomically moved from ``flowcore:<topic>`` into
    ``flowcore:<topic>:processing`` on delivery and only removed from the
    processing list when acknowledged, so a crashed consumer leaves them
    recoverable with :meth:`recover`.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def _queue(topic: str) -> str:
        return f"flowcore:{topic}"

    @staticmethod
    def _processing(topic: str) -> str:
        return f"flowcore:{topic}:processing"

    @staticmethod
    def _dead_letter(topic: str) -> str:
        return f"flowcore:{topic}:deadletter"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except redis.RedisError as exc:
            raise TransportError(f"Cannot reach Redis at {self.host}:{self.port}: {exc}") from exc

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: QueueMessage) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        try:
            await self._redis.lpush(self._queue(topic), message.to_json())
        except redis.RedisError as exc:
            raise TransportError(f"Failed to publish to {topic}: {exc}") from exc

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], QueueMessage]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            message_json = await self._redis.blmove(
                self._queue(topic), self._processing(topic), 1, src="RIGHT", dest="LEFT"
            )
            if message_json is None:
                continue

            try:
                message = QueueMessage.from_json(message_json)
            except ValueError as exc:
                logger.error(f"Discarding unparseable message on {topic}: {exc}")
                await self._redis.lrem(self._processing(topic), 1, message_json)
                await self._redis.lpush(self._dead_letter(topic), message_json)
                continue
            yield (topic, message_json), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """Remove the delivered message from the processing list."""
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        topic, message_json = raw_message
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._processing(topic), 1, message_json)
            if requeue:
                retry = QueueMessage.from_json(message_json).bump_attempt()
                pipe.lpush(self._queue(topic), retry.to_json())
            else:
                pipe.lpush(self._dead_letter(topic), message_json)
            await pipe.execute()

    async def recover(self, topic: str) -> int:
        """Move messages left in the processing list back onto the queue.

        Call on startup when no other consumer of ``topic`` is running.
        """
        if not self._redis:
            await self.connect()
        moved = 0
        while await self._redis.lmove(
            self._processing(topic), self._queue(topic), src="RIGHT", dest="RIGHT"
        ):
            moved += 1
        if moved:
            logger.info(f"Recovered {moved} in-flight messages on {topic}")
        return moved
