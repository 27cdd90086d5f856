"""Fail executions that stay waiting for an external callback too long."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from .constants import (
    DEFAULT_REAPER_SWEEP_INTERVAL,
    DEFAULT_RUNNING_TTL,
    DEFAULT_WAITING_TTL,
    RUNNING_TIMEOUT_MESSAGE,
    WAITING_TIMEOUT_MESSAGE,
)
from .errors import InvalidTransitionError, TransientError
from .persistence.models import ExecutionRecord, ExecutionState, utcnow
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


class WaitingExecutionReaper:
    """Fails executions nobody will finish.

    Waiting executions expire ``waiting_ttl`` seconds after they started
    waiting. Running executions expire ``running_ttl`` seconds after their
    last write: their worker died or could not record the outcome.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        waiting_ttl: float = DEFAULT_WAITING_TTL,
        sweep_interval: float = DEFAULT_REAPER_SWEEP_INTERVAL,
        running_ttl: Optional[float] = DEFAULT_RUNNING_TTL,
    ) -> None:
        self._repository = repository
        self.waiting_ttl = waiting_ttl
        self.running_ttl = running_ttl
        self.sweep_interval = sweep_interval
        self._stopped = asyncio.Event()

    async def _fail_all(self, stale: List[ExecutionRecord], message: str) -> int:
        reaped = 0
        for execution in stale:
            try:
                await self._repository.transition_execution(
                    execution.id, ExecutionState.FAILED, error_message=message
                )
            except InvalidTransitionError:
                # callback, cancel or outcome arrived in the meantime
                continue
            logger.warning(f"Execution {execution.id} on node {execution.node_id} failed: {message}")
            reaped += 1
        return reaped

    async def sweep(self) -> int:
        """Fail every execution past its TTL.

        Returns the number of executions failed.
        """
        now = utcnow()
        waiting = await self._repository.list_executions(
            state=ExecutionState.WAITING,
            waiting_before=now - timedelta(seconds=self.waiting_ttl),
        )
        reaped = await self._fail_all(waiting, WAITING_TIMEOUT_MESSAGE)
        if self.running_ttl is not None:
            running = await self._repository.list_executions(
                state=ExecutionState.RUNNING,
                updated_before=now - timedelta(seconds=self.running_ttl),
            )
            reaped += await self._fail_all(running, RUNNING_TIMEOUT_MESSAGE)
        return reaped

    async def run(self, lifespan: Optional[float] = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        while not self._stopped.is_set():
            try:
                await self.sweep()
            except TransientError as exc:
                logger.error(f"Execution sweep failed: {exc}")
            if deadline is not None and loop.time() >= deadline:
                break
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopped.set()
