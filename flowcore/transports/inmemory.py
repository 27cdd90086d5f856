"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import QueueMessage
from .base import BaseTransport

RawInMemoryMessage = Tuple[str, str, QueueMessage]


class InMemoryTransport(BaseTransport[RawInMemoryMessage]):
    """Simple in-process queue for unit tests.

    Raw messages are ``(topic, json, message)`` triples. Delivered messages are
    tracked until acknowledged; ``nack`` with ``requeue`` puts them back at the
    end of the queue and ``dead_letters`` collects rejected ones.
    """

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[RawInMemoryMessage]] = defaultdict(deque)
        self._unacked: Dict[int, RawInMemoryMessage] = {}
        self.dead_letters: List[RawInMemoryMessage] = []
        self._poll_interval = poll_interval
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: QueueMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (topic, message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInMemoryMessage, QueueMessage]]:
        """Subscribe to messages from topic.

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

            delivery = await self.get(topic)
            if delivery is not None:
                yield delivery
                continue

            await asyncio.sleep(self._poll_interval)

    async def get(self, topic: str) -> Optional[Tuple[RawInMemoryMessage, QueueMessage]]:
        """Take the next message from ``topic`` without waiting, or ``None``."""
        async with self._lock:
            if not self._queues[topic]:
                return None
            raw_message = self._queues[topic].popleft()
            self._unacked[id(raw_message)] = raw_message
        return raw_message, raw_message[2]

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return len(self._queues[topic])

    @property
    def unacked(self) -> int:
        return len(self._unacked)

    async def ack(self, raw_message: RawInMemoryMessage) -> None:
        async with self._lock:
            self._unacked.pop(id(raw_message), None)

    async def nack(self, raw_message: RawInMemoryMessage, requeue: bool = True) -> None:
        async with self._lock:
            self._unacked.pop(id(raw_message), None)
            if requeue:
                self._queues[raw_message[0]].append(raw_message)
            else:
                self.dead_letters.append(raw_message)
