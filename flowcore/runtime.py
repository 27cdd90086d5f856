"""Compose the router, worker, outbox sweep and reaper into one process."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .config import FlowcoreConfig, load_config
from .dispatch import WorkflowDispatcher
from .executor import NodeExecutor
from .outbox import OutboxPublisher
from .persistence import get_repository
from .persistence.repository import WorkflowRepository
from .reaper import WaitingExecutionReaper
from .registry import ComponentRegistry
from .router import EventRouter
from .transports import BaseTransport, get_transport
from .worker import QueueWorker

logger = logging.getLogger(__name__)


class FlowcoreRuntime:
    """Long-running services for one process.

    Any number of runtimes may share the same repository and transport; all
    coordination happens through them.
    """

    def __init__(
        self,
        registry: ComponentRegistry,
        config: Optional[FlowcoreConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        transport: Optional[BaseTransport] = None,
    ) -> None:
        self.config = config or load_config()
        self.registry = registry
        self.repository = repository or get_repository(config=self.config)
        self.transport = transport or get_transport(config=self.config)

        topic = self.config.worker.topic
        self.outbox = OutboxPublisher(
            self.repository,
            self.transport,
            topic=topic,
            publish_grace=self.config.outbox.publish_grace,
            sweep_interval=self.config.outbox.sweep_interval,
            batch_size=self.config.outbox.batch_size,
        )
        self.router = EventRouter(
            self.repository,
            outbox=self.outbox,
            batch_size=self.config.router.batch_size,
            poll_interval=self.config.router.poll_interval,
        )
        self.executor = NodeExecutor(
            self.repository,
            registry,
            settle_attempts=self.config.worker.settle_attempts,
            settle_retry_delay=self.config.worker.settle_retry_delay,
        )
        self.worker = QueueWorker(
            self.repository,
            self.transport,
            self.executor,
            topic=topic,
            concurrency=self.config.worker.concurrency,
        )
        self.reaper = WaitingExecutionReaper(
            self.repository,
            waiting_ttl=self.config.reaper.waiting_ttl,
            running_ttl=self.config.reaper.running_ttl,
            sweep_interval=self.config.reaper.sweep_interval,
        )
        self.dispatcher = WorkflowDispatcher(self.repository, registry)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run every service until ``lifespan`` elapses or ``stop`` is called."""
        await self.transport.connect()
        logger.info("Flowcore runtime starting")
        tasks = [
            asyncio.create_task(self.router.run(lifespan), name="flowcore-router"),
            asyncio.create_task(self.outbox.run(lifespan), name="flowcore-outbox"),
            asyncio.create_task(self.reaper.run(lifespan), name="flowcore-reaper"),
            asyncio.create_task(self.worker.start(lifespan), name="flowcore-worker"),
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.transport.disconnect()
            logger.info("Flowcore runtime stopped")

    def stop(self) -> None:
        """Stop every service; ``run`` returns once in-flight deliveries settle."""
        self.router.stop()
        self.outbox.stop()
        self.reaper.stop()
        self.worker.stop()
