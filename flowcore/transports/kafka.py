"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Tuple

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
    from aiokafka.structs import TopicPartition
except ImportError:  # pragma: no cover - aiokafka not installed
    AIOKafkaConsumer = None  # type: ignore
    AIOKafkaProducer = None  # type: ignore
    TopicPartition = None  # type: ignore

from ..contracts import QueueMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Kafka-based transport for distributed messaging.

    Offsets are committed manually. Deliveries may be settled out of order, so
    a partition only commits up to its lowest unsettled offset. A nack with
    ``requeue`` seeks the partition back so the record is consumed again.
    """

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        group_id: str = "flowcore",
        dlq_topic: str = "flowcore.deadletter",
    ) -> None:
        if AIOKafkaProducer is None or AIOKafkaConsumer is None:
            raise ImportError("aiokafka package is required for KafkaTransport")

        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumer: Optional[AIOKafkaConsumer] = None
        # partition -> delivered offset -> settled
        self._offsets: Dict[Any, Dict[int, bool]] = {}

    async def connect(self) -> None:
        self._producer = AIOKafkaProducer(bootstrap_servers=self.brokers)
        self._consumer = AIOKafkaConsumer(
            bootstrap_servers=self.brokers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await self._producer.start()
        await self._consumer.start()

    async def disconnect(self) -> None:
        self._offsets.clear()
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, message: QueueMessage) -> None:
        if not self._producer:
            raise RuntimeError("KafkaTransport not connected")
        data = message.to_json().encode()
        # keyed by queue item so redeliveries land on the same partition
        await self._producer.send_and_wait(
            topic, value=data, key=message.queue_item_id.encode()
        )

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, QueueMessage]]:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        self._consumer.subscribe([topic])
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break
            try:
                msg = await asyncio.wait_for(self._consumer.getone(), timeout=1)
            except asyncio.TimeoutError:
                continue
            self._track(msg)
            try:
                envelope = QueueMessage.from_json(msg.value.decode())
            except ValueError as exc:
                logger.error(f"Dead-lettering unparseable message on {topic}: {exc}")
                await self.nack(msg, requeue=False)
                continue
            yield msg, envelope

    def _track(self, raw_message: Any) -> None:
        tp = TopicPartition(raw_message.topic, raw_message.partition)
        self._offsets.setdefault(tp, {}).setdefault(raw_message.offset, False)

    async def ack(self, raw_message: Any) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        tp = TopicPartition(raw_message.topic, raw_message.partition)
        offsets = self._offsets.get(tp)
        if not offsets or raw_message.offset not in offsets:
            # already covered by an earlier commit
            return
        offsets[raw_message.offset] = True
        commit = None
        for offset in sorted(offsets):
            if not offsets[offset]:
                break
            del offsets[offset]
            commit = offset + 1
        if commit is not None:
            await self._consumer.commit({tp: commit})

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        if requeue:
            # the offset stays unsettled, holding back commits until it is re-read
            tp = TopicPartition(raw_message.topic, raw_message.partition)
            self._consumer.seek(tp, raw_message.offset)
        else:
            if self._producer:
                await self._producer.send_and_wait(self.dlq_topic, value=raw_message.value)
            await self.ack(raw_message)
