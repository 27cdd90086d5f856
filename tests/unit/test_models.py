"""Workflow definition and execution state machine tests."""

import pytest

from flowcore.errors import GraphValidationError, InvalidTransitionError
from flowcore.persistence.models import (
    Edge,
    EventRecord,
    ExecutionState,
    Node,
    WorkflowDefinition,
    check_transition,
)


def test_workflow_rejects_duplicate_node_ids():
    with pytest.raises(GraphValidationError):
        WorkflowDefinition(nodes=[Node(id="a", ref="echo"), Node(id="a", ref="echo")])


def test_workflow_rejects_dangling_edge():
    with pytest.raises(GraphValidationError):
        WorkflowDefinition(
            nodes=[Node(id="a", ref="echo")],
            edges=[Edge(source_id="a", target_id="missing")],
        )


def test_workflow_rejects_trigger_as_target():
    with pytest.raises(GraphValidationError):
        WorkflowDefinition(
            nodes=[Node(id="a", ref="echo"), Node(id="t", kind="trigger", ref="webhook")],
            edges=[Edge(source_id="a", target_id="t")],
        )


def test_root_event_defaults_to_own_id():
    event = EventRecord(workflow_id="wf", node_id="t", type="x")
    assert event.root_event_id == event.id

    derived = EventRecord(workflow_id="wf", node_id="a", type="y", root_event_id=event.id)
    assert derived.root_event_id == event.id


@pytest.mark.parametrize(
    "current,target",
    [
        (ExecutionState.PENDING, ExecutionState.RUNNING),
        (ExecutionState.RUNNING, ExecutionState.WAITING),
        (ExecutionState.WAITING, ExecutionState.RUNNING),
        (ExecutionState.WAITING, ExecutionState.FAILED),
        (ExecutionState.RUNNING, ExecutionState.CANCELED),
    ],
)
def test_allowed_transitions(current, target):
    assert current.can_transition_to(target)
    check_transition("e1", current, target, {})


@pytest.mark.parametrize("terminal", [ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELED])
def test_terminal_states_are_final(terminal):
    assert terminal.is_terminal
    for target in ExecutionState:
        with pytest.raises(InvalidTransitionError):
            check_transition("e1", terminal, target, {})


def test_pending_cannot_complete_directly():
    with pytest.raises(InvalidTransitionError):
        check_transition("e1", ExecutionState.PENDING, ExecutionState.COMPLETED, {})


def test_unknown_fields_rejected():
    with pytest.raises(ValueError):
        check_transition("e1", ExecutionState.PENDING, ExecutionState.RUNNING, {"state": "x"})
