"""Publish committed queue items to the transport and reconcile missed publishes."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Iterable, Optional

from .constants import (
    DEFAULT_OUTBOX_BATCH_SIZE,
    DEFAULT_OUTBOX_PUBLISH_GRACE,
    DEFAULT_OUTBOX_SWEEP_INTERVAL,
    DEFAULT_QUEUE_TOPIC,
)
from .contracts import QueueMessage
from .errors import TransientError
from .persistence.models import QueueItemRecord, utcnow
from .persistence.repository import WorkflowRepository
from .transports.base import BaseTransport

logger = logging.getLogger(__name__)


class OutboxPublisher:
    """Hands durable queue items to the transport.

    Items are only ever published after their row is committed. An item is
    marked published after the broker accepts it, so a crash in between leads
    to a second publish, which the worker's idempotency guard absorbs.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        topic: str = DEFAULT_QUEUE_TOPIC,
        publish_grace: float = DEFAULT_OUTBOX_PUBLISH_GRACE,
        sweep_interval: float = DEFAULT_OUTBOX_SWEEP_INTERVAL,
        batch_size: int = DEFAULT_OUTBOX_BATCH_SIZE,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self.topic = topic
        self.publish_grace = publish_grace
        self.sweep_interval = sweep_interval
        self.batch_size = batch_size
        self._stopped = asyncio.Event()

    async def publish(self, items: Iterable[QueueItemRecord]) -> int:
        """Publish ``items`` and mark them published. Returns the number published.

        Failures are logged and left for the reconciliation sweep.
        """
        published = 0
        for item in items:
            try:
                await self._transport.publish(self.topic, QueueMessage.for_item(item))
                await self._repository.mark_queue_item_published(item.id)
            except Exception as exc:  # broker client errors differ per backend
                logger.warning(
                    f"Publishing queue item {item.id} failed, leaving it for reconciliation: {exc}"
                )
                continue
            published += 1
        return published

    async def sweep(self) -> int:
        """Re-publish items whose publish never completed."""
        cutoff = utcnow() - timedelta(seconds=self.publish_grace)
        items = await self._repository.list_unpublished_queue_items(
            self.batch_size, created_before=cutoff
        )
        if not items:
            return 0
        logger.info(f"Reconciling {len(items)} unpublished queue items")
        return await self.publish(items)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Sweep every ``sweep_interval`` seconds until stopped."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        while not self._stopped.is_set():
            try:
                await self.sweep()
            except TransientError as exc:
                logger.error(f"Outbox sweep failed: {exc}")
            if deadline is not None and loop.time() >= deadline:
                break
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
