"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from ..constants import DEFAULT_CHANNEL
from ..errors import GraphValidationError, InvalidTransitionError
from ..predicates import Predicate


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Node(BaseModel):
    """A trigger or component placed in a workflow graph."""

    id: str
    name: Optional[str] = None
    kind: Literal["trigger", "component"] = "component"
    ref: str = Field(..., description="Registered component or trigger name")
    configuration: Dict[str, Any] = Field(default_factory=dict)


class Edge(BaseModel):
    """Connects an output channel of one node to another node."""

    source_id: str
    target_id: str
    channel: str = DEFAULT_CHANNEL
    predicate: Optional[Predicate] = None


class WorkflowDefinition(BaseModel):
    """Directed graph of nodes owned by an organization."""

    id: str = Field(default_factory=new_id)
    organization_id: Optional[str] = None
    name: Optional[str] = None
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_graph(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise GraphValidationError(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        kinds = {node.id: node.kind for node in self.nodes}
        for edge in self.edges:
            if edge.source_id not in kinds:
                raise GraphValidationError(
                    f"Edge source '{edge.source_id}' is not a node of workflow '{self.id}'"
                )
            if edge.target_id not in kinds:
                raise GraphValidationError(
                    f"Edge target '{edge.target_id}' is not a node of workflow '{self.id}'"
                )
            if kinds[edge.target_id] == "trigger":
                raise GraphValidationError(
                    f"Trigger node '{edge.target_id}' cannot be the target of an edge"
                )
        return self

    def get_node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.id == node_id), None)


class EventState(str, Enum):
    PENDING = "pending"
    ROUTED = "routed"


class EventRecord(BaseModel):
    """Output of a trigger or of a completed execution, subject to routing."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    node_id: str
    channel: str = DEFAULT_CHANNEL
    type: str
    data: Any = None
    state: EventState = EventState.PENDING
    root_event_id: str = ""
    execution_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _default_root(self) -> "EventRecord":
        if not self.root_event_id:
            self.root_event_id = self.id
        return self


class QueueItemRecord(BaseModel):
    """One event scheduled for one destination node."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    node_id: str
    event_id: str
    root_event_id: str
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def can_transition_to(self, target: "ExecutionState") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


TERMINAL_STATES: FrozenSet[ExecutionState] = frozenset(
    {ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELED}
)

ALLOWED_TRANSITIONS: Dict[ExecutionState, FrozenSet[ExecutionState]] = {
    ExecutionState.PENDING: frozenset({ExecutionState.RUNNING}),
    ExecutionState.RUNNING: frozenset(
        {
            ExecutionState.COMPLETED,
            ExecutionState.FAILED,
            ExecutionState.WAITING,
            ExecutionState.CANCELED,
        }
    ),
    # failed is reachable from waiting only through the TTL reaper
    ExecutionState.WAITING: frozenset(
        {ExecutionState.RUNNING, ExecutionState.CANCELED, ExecutionState.FAILED}
    ),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.CANCELED: frozenset(),
}


class ExecutionRecord(BaseModel):
    """A tracked run of a component against one queue item."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    node_id: str
    queue_item_id: str
    event_id: str
    root_event_id: str
    state: ExecutionState = ExecutionState.PENDING
    input_data: Any = None
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    async_handle: Optional[str] = None
    waiting_since: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Fields ``transition_execution`` is allowed to write alongside the state.
MUTABLE_EXECUTION_FIELDS = frozenset(
    {"output_data", "error_message", "async_handle", "waiting_since", "metadata"}
)


def check_transition(
    execution_id: str, current: ExecutionState, target: ExecutionState, fields: Dict[str, Any]
) -> None:
    """Validate a requested state change and the fields written with it."""

    unknown = set(fields) - MUTABLE_EXECUTION_FIELDS
    if unknown:
        raise ValueError(f"Cannot update execution fields: {', '.join(sorted(unknown))}")
    if not ExecutionState(current).can_transition_to(target):
        raise InvalidTransitionError(execution_id, ExecutionState(current).value, target.value)
