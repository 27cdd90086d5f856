"""Event router: turns pending events into queue items."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .constants import DEFAULT_POLL_INTERVAL, DEFAULT_ROUTER_BATCH_SIZE
from .errors import GraphResolutionError, TransientError
from .graph import GraphResolver
from .outbox import OutboxPublisher
from .persistence.models import QueueItemRecord
from .persistence.repository import WorkflowRepository
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class EventRouter:
    """Polls for pending events and routes each one exactly once.

    Routing an event writes all of its queue items and flips it to ``routed``
    in one atomic step. Queue items are unique per (event, node), so a routing
    pass that is retried after a crash completes the missing items instead of
    duplicating existing ones.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        outbox: Optional[OutboxPublisher] = None,
        resolver: Optional[GraphResolver] = None,
        batch_size: int = DEFAULT_ROUTER_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._repository = repository
        self._outbox = outbox
        self._resolver = resolver or GraphResolver()
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self._stopped = asyncio.Event()

    async def route_once(self) -> int:
        """Claim and route one batch of pending events.

        Returns the number of events marked routed. Events that fail to route
        stay pending and are retried on the next cycle.
        """
        routed = 0
        created: List[QueueItemRecord] = []

        async with self._repository.claim_pending_events(self.batch_size) as claim:
            for event in claim.events:
                try:
                    workflow = await claim.get_workflow(event.workflow_id)
                    nodes = self._resolver.resolve(workflow, event)
                    items = await claim.route(event, [node.id for node in nodes])
                except GraphResolutionError as exc:
                    logger.error(f"{exc}; leaving it pending")
                    continue
                except TransientError as exc:
                    logger.error(f"Store error routing event {event.id}, will retry: {exc}")
                    continue
                except Exception:
                    logger.exception(f"Unexpected error routing event {event.id}")
                    continue

                routed += 1
                created.extend(items)
                if nodes:
                    logger.info(
                        f"Routed event {event.id} from node {event.node_id} to "
                        f"{', '.join(n.id for n in nodes)}"
                    )
                else:
                    logger.debug(f"Event {event.id} has no downstream nodes")

        # publish only after the claim has committed
        if created and self._outbox is not None:
            await self._outbox.publish(created)
        return routed

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Route on a fixed poll interval until stopped.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs until ``stop``.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        failures = 0
        logger.info(f"Event router started (poll interval {self.poll_interval}s)")

        while not self._stopped.is_set():
            delay = self.poll_interval
            try:
                routed = await self.route_once()
                failures = 0
                if routed >= self.batch_size:
                    # more may be waiting
                    delay = 0
            except TransientError as exc:
                failures += 1
                delay = max(self.poll_interval, compute_backoff(failures))
                logger.error(f"Routing cycle failed ({failures} in a row), retrying in {delay:.1f}s: {exc}")

            if deadline is not None and loop.time() >= deadline:
                break
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay or 0.001)
            except asyncio.TimeoutError:
                pass

        logger.info("Event router stopped")

    def stop(self) -> None:
        self._stopped.set()
