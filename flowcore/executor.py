"""Node executor: drives one execution through its state machine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError

from .components.base import Component
from .components.context import ExecutionContext, SetupContext, WebhookRequest
from .constants import DEFAULT_SETTLE_ATTEMPTS, DEFAULT_SETTLE_RETRY_DELAY
from .errors import ConfigurationError, InvalidTransitionError, TransientError
from .persistence.models import (
    EventRecord,
    ExecutionRecord,
    ExecutionState,
    Node,
    WorkflowDefinition,
    utcnow,
)
from .persistence.repository import WorkflowRepository
from .registry import ComponentRegistry

logger = logging.getLogger(__name__)


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class NodeExecutor:
    """Runs component logic for executions and records the outcome.

    Exceptions raised by component code never escape: they turn into a
    ``failed`` execution. Component logic itself is never retried here. Writes
    of an outcome are retried ``settle_attempts`` times on transient store
    errors, since the component already ran; if they still fail the error
    escapes and the reaper eventually fails the abandoned ``running`` row.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: ComponentRegistry,
        settle_attempts: int = DEFAULT_SETTLE_ATTEMPTS,
        settle_retry_delay: float = DEFAULT_SETTLE_RETRY_DELAY,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self.settle_attempts = settle_attempts
        self.settle_retry_delay = settle_retry_delay

    # ------------------------------------------------------------------
    def _resolve(
        self, workflow: Optional[WorkflowDefinition], node_id: str
    ) -> Tuple[Node, Component, BaseModel, List[str]]:
        if workflow is None:
            raise ConfigurationError("workflow not found")
        node = workflow.get_node(node_id)
        if node is None:
            raise ConfigurationError(f"node '{node_id}' not found in workflow '{workflow.id}'")
        component = self._registry.component(node.ref)
        try:
            configuration = component.configuration_model.model_validate(node.configuration)
        except ValidationError as exc:
            raise ConfigurationError(
                f"invalid configuration for {component.name}: {exc}"
            ) from exc
        return node, component, configuration, component.output_channels(configuration)

    async def _write_outcome(
        self, write: Callable[..., Awaitable[ExecutionRecord]], *args: Any, **kwargs: Any
    ) -> ExecutionRecord:
        attempt = 1
        while True:
            try:
                return await write(*args, **kwargs)
            except TransientError as exc:
                if attempt >= self.settle_attempts:
                    raise
                logger.warning(
                    f"Recording outcome failed (attempt {attempt}/{self.settle_attempts}), retrying: {exc}"
                )
                await asyncio.sleep(self.settle_retry_delay * attempt)
                attempt += 1

    async def _fail(self, execution: ExecutionRecord, exc: BaseException) -> ExecutionRecord:
        message = _error_message(exc)
        logger.warning(f"Execution {execution.id} on node {execution.node_id} failed: {message}")
        try:
            return await self._write_outcome(
                self._repository.transition_execution,
                execution.id,
                ExecutionState.FAILED,
                error_message=message,
            )
        except InvalidTransitionError as conflict:
            logger.warning(f"Discarding failure of execution {execution.id}: {conflict}")
            return await self._repository.get_execution(execution.id) or execution

    async def _settle(
        self, execution: ExecutionRecord, ctx: ExecutionContext, handle: Optional[str]
    ) -> ExecutionRecord:
        try:
            if handle is not None or ctx.is_waiting:
                waiting = await self._write_outcome(
                    self._repository.transition_execution,
                    execution.id,
                    ExecutionState.WAITING,
                    async_handle=handle or execution.async_handle,
                    waiting_since=utcnow(),
                    metadata=ctx.metadata,
                )
                logger.info(
                    f"Execution {execution.id} waiting for external completion (handle={waiting.async_handle})"
                )
                return waiting

            output_data: Dict[str, Any] = {}
            events: List[EventRecord] = []
            for channel, (event_type, payloads) in ctx.outputs.items():
                data = payloads[0] if len(payloads) == 1 else payloads
                output_data[channel] = data
                events.append(
                    EventRecord(
                        workflow_id=execution.workflow_id,
                        node_id=execution.node_id,
                        channel=channel,
                        type=event_type,
                        data=data,
                        root_event_id=execution.root_event_id,
                        execution_id=execution.id,
                    )
                )
            completed = await self._write_outcome(
                self._repository.complete_execution, execution.id, output_data, events
            )
        except InvalidTransitionError as conflict:
            # canceled or reaped while the component was running, or an
            # earlier attempt of this write already committed
            logger.warning(f"Discarding outcome of execution {execution.id}: {conflict}")
            return await self._repository.get_execution(execution.id) or execution

        logger.info(
            f"Execution {execution.id} completed with {len(events)} event(s) "
            f"on {', '.join(output_data) or 'no channels'}"
        )
        return completed

    # ------------------------------------------------------------------
    async def run(
        self,
        execution: ExecutionRecord,
        workflow: Optional[WorkflowDefinition],
        event: Optional[EventRecord] = None,
    ) -> ExecutionRecord:
        """Run a pending execution to a terminal or waiting state."""
        execution = await self._repository.transition_execution(
            execution.id, ExecutionState.RUNNING
        )
        logger.info(f"Execution {execution.id} running on node {execution.node_id}")

        try:
            node, component, configuration, channels = self._resolve(
                workflow, execution.node_id
            )
            await component.setup(
                SetupContext(execution.workflow_id, node, configuration, execution.metadata)
            )
        except Exception as exc:
            return await self._fail(execution, exc)

        ctx = ExecutionContext(execution, node, configuration, channels, event=event)
        try:
            handle = await component.process_queue_item(ctx)
        except Exception as exc:
            return await self._fail(execution, exc)
        return await self._settle(execution, ctx, handle)

    async def _claim_callback(
        self, execution: ExecutionRecord
    ) -> Tuple[Optional[ExecutionRecord], int]:
        """Move a waiting execution to running for one callback.

        Only one of several concurrent callbacks wins; the others get the
        status matching the state the winner left behind.
        """
        try:
            claimed = await self._repository.transition_execution(
                execution.id, ExecutionState.RUNNING
            )
        except InvalidTransitionError as conflict:
            logger.info(f"Callback for execution {execution.id} lost to another update: {conflict}")
            current = await self._repository.get_execution(execution.id)
            return None, 200 if current is not None and current.state.is_terminal else 409
        return claimed, 200

    async def handle_webhook(self, handle: str, request: WebhookRequest) -> int:
        """Deliver an external callback to the waiting execution registered under ``handle``.

        Returns the HTTP status for the caller. A 4xx/5xx answer from the
        component leaves the execution waiting, and its waiting timeout keeps
        counting from when it first started waiting.
        """
        execution = await self._repository.find_execution_by_handle(handle)
        if execution is None:
            logger.warning(f"No execution registered for handle {handle}")
            return 404
        if execution.state.is_terminal:
            logger.info(f"Ignoring callback for finished execution {execution.id}")
            return 200
        if execution.state != ExecutionState.WAITING:
            return 409

        workflow = await self._repository.get_workflow(execution.workflow_id)
        try:
            node, component, configuration, channels = self._resolve(
                workflow, execution.node_id
            )
        except ConfigurationError as exc:
            claimed, status = await self._claim_callback(execution)
            if claimed is None:
                return status
            await self._fail(claimed, exc)
            return 500

        claimed, status = await self._claim_callback(execution)
        if claimed is None:
            return status
        ctx = ExecutionContext(claimed, node, configuration, channels, request=request)
        try:
            status = await component.handle_webhook(ctx)
        except Exception as exc:
            await self._fail(claimed, exc)
            return 500

        if status >= 400:
            try:
                await self._repository.transition_execution(claimed.id, ExecutionState.WAITING)
            except InvalidTransitionError as conflict:
                logger.warning(f"Execution {claimed.id} left waiting state during callback: {conflict}")
            return status
        await self._settle(claimed, ctx, None)
        return status

    async def cancel(self, execution_id: str, reason: Optional[str] = None) -> ExecutionRecord:
        """Cancel a running or waiting execution.

        The component's ``cancel`` hook is best effort: its failure is logged
        and the execution is canceled regardless.
        """
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise InvalidTransitionError(execution_id, None, ExecutionState.CANCELED.value)
        if execution.state not in (ExecutionState.RUNNING, ExecutionState.WAITING):
            raise InvalidTransitionError(
                execution_id, execution.state.value, ExecutionState.CANCELED.value
            )

        workflow = await self._repository.get_workflow(execution.workflow_id)
        try:
            node, component, configuration, channels = self._resolve(
                workflow, execution.node_id
            )
            await component.cancel(ExecutionContext(execution, node, configuration, channels))
        except Exception as exc:
            logger.warning(f"Cancel hook for execution {execution_id} failed: {_error_message(exc)}")

        canceled = await self._repository.transition_execution(
            execution_id, ExecutionState.CANCELED, error_message=reason
        )
        logger.info(f"Execution {execution_id} canceled")
        return canceled
