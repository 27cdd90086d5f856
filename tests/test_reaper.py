"""Waiting execution reaper tests."""

import asyncio

import pytest

from flowcore.components import WebhookRequest
from flowcore.constants import RUNNING_TIMEOUT_MESSAGE, WAITING_TIMEOUT_MESSAGE
from flowcore.executor import NodeExecutor
from flowcore.persistence.models import (
    Edge,
    ExecutionRecord,
    ExecutionState,
    Node,
    WorkflowDefinition,
)
from flowcore.reaper import WaitingExecutionReaper


async def _execution_in(repository, state, item_id):
    execution = await repository.create_execution(
        ExecutionRecord(
            workflow_id="wf",
            node_id="a",
            queue_item_id=item_id,
            event_id="ev",
            root_event_id="ev",
        )
    )
    await repository.transition_execution(execution.id, ExecutionState.RUNNING)
    if state == ExecutionState.WAITING:
        await repository.transition_execution(
            execution.id, ExecutionState.WAITING, async_handle=f"h-{item_id}"
        )
    return execution


@pytest.mark.asyncio
async def test_sweep_fails_stale_waiting_executions(repository):
    waiting = await _execution_in(repository, ExecutionState.WAITING, "i1")
    running = await _execution_in(repository, ExecutionState.RUNNING, "i2")
    await asyncio.sleep(0.02)

    reaper = WaitingExecutionReaper(repository, waiting_ttl=0.01)
    assert await reaper.sweep() == 1

    failed = await repository.get_execution(waiting.id)
    assert failed.state == ExecutionState.FAILED
    assert failed.error_message == WAITING_TIMEOUT_MESSAGE
    assert (await repository.get_execution(running.id)).state == ExecutionState.RUNNING


@pytest.mark.asyncio
async def test_sweep_leaves_fresh_waiting_executions(repository):
    waiting = await _execution_in(repository, ExecutionState.WAITING, "i1")

    reaper = WaitingExecutionReaper(repository, waiting_ttl=3600)
    assert await reaper.sweep() == 0
    assert (await repository.get_execution(waiting.id)).state == ExecutionState.WAITING


@pytest.mark.asyncio
async def test_run_stops_after_lifespan(repository):
    waiting = await _execution_in(repository, ExecutionState.WAITING, "i1")
    reaper = WaitingExecutionReaper(repository, waiting_ttl=0.01, sweep_interval=0.01)

    await reaper.run(lifespan=0.05)

    assert (await repository.get_execution(waiting.id)).state == ExecutionState.FAILED


@pytest.mark.asyncio
async def test_sweep_fails_abandoned_running_executions(repository):
    running = await _execution_in(repository, ExecutionState.RUNNING, "i1")
    await asyncio.sleep(0.02)

    assert await WaitingExecutionReaper(repository, running_ttl=None).sweep() == 0
    assert await WaitingExecutionReaper(repository, running_ttl=0.01).sweep() == 1

    failed = await repository.get_execution(running.id)
    assert failed.state == ExecutionState.FAILED
    assert failed.error_message == RUNNING_TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_rejected_callbacks_do_not_extend_waiting_timeout(repository, registry):
    workflow = WorkflowDefinition(
        id="wf",
        nodes=[Node(id="t", kind="trigger", ref="webhook"), Node(id="a", ref="approval")],
        edges=[Edge(source_id="t", target_id="a")],
    )
    await repository.save_workflow(workflow)
    execution = await repository.create_execution(
        ExecutionRecord(
            workflow_id="wf", node_id="a", queue_item_id="i1", event_id="ev", root_event_id="ev"
        )
    )
    executor = NodeExecutor(repository, registry)
    waiting = await executor.run(execution, workflow)
    await asyncio.sleep(0.03)

    forged = WebhookRequest(body=b"{}", headers={"X-Signature": "forged"})
    assert await executor.handle_webhook(waiting.async_handle, forged) == 403
    stored = await repository.get_execution(execution.id)
    assert stored.state == ExecutionState.WAITING
    assert stored.waiting_since == waiting.waiting_since
    assert stored.updated_at > waiting.updated_at

    assert await WaitingExecutionReaper(repository, waiting_ttl=0.02).sweep() == 1
    assert (await repository.get_execution(execution.id)).state == ExecutionState.FAILED
