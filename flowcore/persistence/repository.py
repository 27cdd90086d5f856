"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, Sequence

from .models import (
    EventRecord,
    EventState,
    ExecutionRecord,
    ExecutionState,
    QueueItemRecord,
    WorkflowDefinition,
)


class EventClaim(Protocol):
    """Batch of pending events locked for routing by one router.

    Rows stay claimed until the surrounding context exits. Each ``route`` call
    is its own atomic unit: either every queue item for the event is written
    and the event is marked routed, or nothing is.
    """

    events: List[EventRecord]

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Read a workflow definition within the claim."""

    async def route(
        self, event: EventRecord, node_ids: Sequence[str]
    ) -> List[QueueItemRecord]:
        """Create queue items for ``node_ids`` and mark ``event`` routed.

        Items that already exist for an (event, node) pair are kept as they
        are. Returns the event's queue items that have not been published yet.
        """


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    # workflows ---------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Persist (insert or replace) a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def get_node_metadata(self, workflow_id: str, node_id: str) -> Dict[str, Any]:
        """Return provisioning metadata recorded for a node."""

    async def save_node_metadata(
        self, workflow_id: str, node_id: str, metadata: Dict[str, Any]
    ) -> None:
        """Replace provisioning metadata for a node."""

    # events ------------------------------------------------------------
    async def create_event(self, event: EventRecord) -> EventRecord:
        """Persist a new event."""

    async def get_event(self, event_id: str) -> EventRecord | None:
        """Retrieve an event by id."""

    async def list_events(
        self,
        workflow_id: Optional[str] = None,
        state: Optional[EventState] = None,
        root_event_id: Optional[str] = None,
    ) -> List[EventRecord]:
        """Return events matching the given filters, oldest first."""

    def claim_pending_events(self, limit: int) -> AsyncContextManager[EventClaim]:
        """Claim up to ``limit`` pending events, oldest first."""

    # queue items -------------------------------------------------------
    async def create_queue_item(self, item: QueueItemRecord) -> bool:
        """Insert ``item`` unless one exists for its (event, node) pair."""

    async def get_queue_item(self, item_id: str) -> QueueItemRecord | None:
        """Retrieve a queue item by id."""

    async def list_queue_items(
        self, event_id: Optional[str] = None, node_id: Optional[str] = None
    ) -> List[QueueItemRecord]:
        """Return queue items matching the given filters, oldest first."""

    async def list_unpublished_queue_items(
        self, limit: int, created_before: Optional[datetime] = None
    ) -> List[QueueItemRecord]:
        """Return queue items not yet handed to the transport."""

    async def mark_queue_item_published(self, item_id: str) -> None:
        """Record that the item was published."""

    # executions --------------------------------------------------------
    async def create_execution(self, execution: ExecutionRecord) -> ExecutionRecord | None:
        """Insert ``execution`` unless one exists for its queue item.

        Returns ``None`` when the queue item already has an execution.
        """

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        """Retrieve an execution by id."""

    async def get_execution_for_queue_item(
        self, queue_item_id: str
    ) -> ExecutionRecord | None:
        """Retrieve the execution created for a queue item."""

    async def find_execution_by_handle(self, handle: str) -> ExecutionRecord | None:
        """Retrieve the execution registered under an async completion handle."""

    async def list_executions(
        self,
        state: Optional[ExecutionState] = None,
        workflow_id: Optional[str] = None,
        updated_before: Optional[datetime] = None,
        waiting_before: Optional[datetime] = None,
    ) -> List[ExecutionRecord]:
        """Return executions matching the given filters, oldest first.

        ``waiting_before`` compares ``waiting_since``, or ``updated_at`` for
        rows that never recorded it.
        """

    async def transition_execution(
        self, execution_id: str, target: ExecutionState, **fields: Any
    ) -> ExecutionRecord:
        """Move an execution to ``target`` if the state machine allows it.

        Raises ``InvalidTransitionError`` without writing anything otherwise.
        """

    async def complete_execution(
        self,
        execution_id: str,
        output_data: Dict[str, Any],
        events: Sequence[EventRecord],
    ) -> ExecutionRecord:
        """Mark a running execution completed and persist its output events."""
