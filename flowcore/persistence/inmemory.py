"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from ..errors import InvalidTransitionError
from .models import (
    EventRecord,
    EventState,
    ExecutionRecord,
    ExecutionState,
    QueueItemRecord,
    WorkflowDefinition,
    check_transition,
    utcnow,
)
from .repository import WorkflowRepository


class _InMemoryClaim:
    def __init__(self, repo: "InMemoryWorkflowRepository", events: List[EventRecord]):
        self._repo = repo
        self.events = events

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._repo._get_workflow(workflow_id)

    async def route(
        self, event: EventRecord, node_ids: Sequence[str]
    ) -> List[QueueItemRecord]:
        stored = self._repo._events[event.id]
        if stored.state == EventState.ROUTED:
            return []
        for node_id in node_ids:
            self._repo._insert_queue_item(
                QueueItemRecord(
                    workflow_id=event.workflow_id,
                    node_id=node_id,
                    event_id=event.id,
                    root_event_id=event.root_event_id,
                )
            )
        stored.state = EventState.ROUTED
        event.state = EventState.ROUTED
        return [
            item.model_copy()
            for item in self._repo._items_for_event(event.id)
            if item.published_at is None
        ]


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._node_metadata: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._events: Dict[str, EventRecord] = {}
        self._queue_items: Dict[str, QueueItemRecord] = {}
        self._queue_item_keys: Dict[Tuple[str, str], str] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._executions_by_item: Dict[str, str] = {}
        self._claim_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    def _insert_queue_item(self, item: QueueItemRecord) -> bool:
        key = (item.event_id, item.node_id)
        if key in self._queue_item_keys:
            return False
        self._queue_items[item.id] = item.model_copy()
        self._queue_item_keys[key] = item.id
        return True

    def _items_for_event(self, event_id: str) -> List[QueueItemRecord]:
        return [i for i in self._queue_items.values() if i.event_id == event_id]

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._get_workflow(workflow_id)

    async def get_node_metadata(self, workflow_id: str, node_id: str) -> Dict[str, Any]:
        return dict(self._node_metadata.get((workflow_id, node_id), {}))

    async def save_node_metadata(
        self, workflow_id: str, node_id: str, metadata: Dict[str, Any]
    ) -> None:
        self._node_metadata[(workflow_id, node_id)] = dict(metadata)

    # ------------------------------------------------------------------
    async def create_event(self, event: EventRecord) -> EventRecord:
        self._events[event.id] = event.model_copy(deep=True)
        return event

    async def get_event(self, event_id: str) -> EventRecord | None:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def list_events(
        self,
        workflow_id: Optional[str] = None,
        state: Optional[EventState] = None,
        root_event_id: Optional[str] = None,
    ) -> List[EventRecord]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._events.values(), key=lambda e: e.created_at)
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (state is None or e.state == state)
            and (root_event_id is None or e.root_event_id == root_event_id)
        ]

    @asynccontextmanager
    async def claim_pending_events(self, limit: int) -> AsyncIterator[_InMemoryClaim]:
        async with self._claim_lock:
            pending = await self.list_events(state=EventState.PENDING)
            yield _InMemoryClaim(self, pending[:limit])

    # ------------------------------------------------------------------
    async def create_queue_item(self, item: QueueItemRecord) -> bool:
        return self._insert_queue_item(item)

    async def get_queue_item(self, item_id: str) -> QueueItemRecord | None:
        item = self._queue_items.get(item_id)
        return item.model_copy() if item else None

    async def list_queue_items(
        self, event_id: Optional[str] = None, node_id: Optional[str] = None
    ) -> List[QueueItemRecord]:
        return [
            i.model_copy()
            for i in sorted(self._queue_items.values(), key=lambda i: i.created_at)
            if (event_id is None or i.event_id == event_id)
            and (node_id is None or i.node_id == node_id)
        ]

    async def list_unpublished_queue_items(
        self, limit: int, created_before: Optional[datetime] = None
    ) -> List[QueueItemRecord]:
        items = [
            i
            for i in await self.list_queue_items()
            if i.published_at is None
            and (created_before is None or i.created_at < created_before)
        ]
        return items[:limit]

    async def mark_queue_item_published(self, item_id: str) -> None:
        item = self._queue_items.get(item_id)
        if item and item.published_at is None:
            item.published_at = utcnow()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: ExecutionRecord) -> ExecutionRecord | None:
        if execution.queue_item_id in self._executions_by_item:
            return None
        self._executions[execution.id] = execution.model_copy(deep=True)
        self._executions_by_item[execution.queue_item_id] = execution.id
        return execution

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def get_execution_for_queue_item(
        self, queue_item_id: str
    ) -> ExecutionRecord | None:
        execution_id = self._executions_by_item.get(queue_item_id)
        return await self.get_execution(execution_id) if execution_id else None

    async def find_execution_by_handle(self, handle: str) -> ExecutionRecord | None:
        for execution in self._executions.values():
            if execution.async_handle == handle:
                return execution.model_copy(deep=True)
        return None

    async def list_executions(
        self,
        state: Optional[ExecutionState] = None,
        workflow_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        waiting_before: Optional[datetime] = None,
    ) -> List[ExecutionRecord]:
        return [
            e.model_copy(deep=True)
            for e in sorted(self._executions.values(), key=lambda e: e.created_at)
            if (state is None or e.state == state)
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (updated_before is None or e.updated_at < updated_before)
            and (
                waiting_before is None
                or (e.waiting_since or e.updated_at) < waiting_before
            )
        ]

    async def transition_execution(
        self, execution_id: str, target: ExecutionState, **fields: Any
    ) -> ExecutionRecord:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise InvalidTransitionError(execution_id, None, target.value)
        check_transition(execution_id, execution.state, target, fields)
        for key, value in fields.items():
            setattr(execution, key, value)
        execution.state = target
        execution.updated_at = utcnow()
        return execution.model_copy(deep=True)

    async def complete_execution(
        self,
        execution_id: str,
        output_data: Dict[str, Any],
        events: Sequence[EventRecord],
    ) -> ExecutionRecord:
        completed = await self.transition_execution(
            execution_id, ExecutionState.COMPLETED, output_data=output_data
        )
        for event in events:
            await self.create_event(event)
        return completed
