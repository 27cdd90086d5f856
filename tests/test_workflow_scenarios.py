"""End-to-end workflow runs through router, outbox, transport, worker and executor."""

from typing import List

import pytest
from conftest import EchoComponent, FailingComponent, Pipeline, WebhookTrigger
from pydantic import BaseModel

from flowcore.components import Component, ExecutionContext, WebhookRequest
from flowcore.constants import DEFAULT_QUEUE_TOPIC
from flowcore.contracts import QueueMessage
from flowcore.dispatch import WorkflowDispatcher
from flowcore.persistence.models import Edge, ExecutionState, Node, WorkflowDefinition
from flowcore.registry import ComponentRegistry


class CheckComponent(Component):
    """Marks an input as passed or failed."""

    name = "check"

    def output_channels(self, configuration: BaseModel) -> List[str]:
        return ["passed", "failed"]

    async def execute(self, ctx: ExecutionContext) -> None:
        result = {"checked": ctx.input["value"], "ok": ctx.input["value"] > 0}
        channel = "passed" if result["ok"] else "failed"
        ctx.emit(channel, f"check.{channel}", [result])


@pytest.fixture
def scenario_registry():
    return ComponentRegistry(
        [CheckComponent(), EchoComponent(), FailingComponent(), WebhookTrigger()]
    )


def _check_then_echo(first_ref="check"):
    return WorkflowDefinition(
        id="wf",
        nodes=[
            Node(id="T", kind="trigger", ref="webhook"),
            Node(id="A", ref=first_ref),
            Node(id="B", ref="echo"),
        ],
        edges=[
            Edge(source_id="T", target_id="A"),
            Edge(source_id="A", target_id="B", channel="passed"),
        ],
    )


@pytest.mark.asyncio
async def test_trigger_to_component_chain(repository, scenario_registry):
    pipeline = Pipeline(repository, scenario_registry)
    dispatcher = WorkflowDispatcher(repository, scenario_registry)
    await dispatcher.register_workflow(_check_then_echo())

    root = await dispatcher.fire("wf", "T", "webhook.received", {"value": 5})
    await pipeline.settle()

    executions = await repository.list_executions(workflow_id="wf")
    assert [e.node_id for e in executions] == ["A", "B"]
    assert all(e.state == ExecutionState.COMPLETED for e in executions)
    a, b = executions
    assert a.output_data == {"passed": {"checked": 5, "ok": True}}
    assert b.input_data == a.output_data["passed"]
    assert {e.root_event_id for e in executions} == {root.id}

    items_for_a = await repository.list_queue_items(node_id="A")
    items_for_b = await repository.list_queue_items(node_id="B")
    assert len(items_for_a) == 1
    assert len(items_for_b) == 1


@pytest.mark.asyncio
async def test_unlistened_channel_stops_the_chain(repository, scenario_registry):
    pipeline = Pipeline(repository, scenario_registry)
    dispatcher = WorkflowDispatcher(repository, scenario_registry)
    await dispatcher.register_workflow(_check_then_echo())

    await dispatcher.fire("wf", "T", "webhook.received", {"value": -1})
    await pipeline.settle()

    [a] = await repository.list_executions(workflow_id="wf")
    assert a.output_data == {"failed": {"checked": -1, "ok": False}}
    assert await repository.list_queue_items(node_id="B") == []


@pytest.mark.asyncio
async def test_failed_execution_creates_no_downstream_work(repository, scenario_registry):
    pipeline = Pipeline(repository, scenario_registry)
    dispatcher = WorkflowDispatcher(repository, scenario_registry)
    workflow = WorkflowDefinition(
        id="wf",
        nodes=[
            Node(id="T", kind="trigger", ref="webhook"),
            Node(id="A", ref="fail"),
            Node(id="B", ref="echo"),
        ],
        edges=[Edge(source_id="T", target_id="A"), Edge(source_id="A", target_id="B")],
    )
    await dispatcher.register_workflow(workflow)

    root = await dispatcher.fire("wf", "T", "webhook.received", {"value": 1})
    await pipeline.settle()

    [a] = await repository.list_executions(workflow_id="wf")
    assert a.state == ExecutionState.FAILED
    assert a.error_message == "upstream returned 502: bad gateway"
    assert [e.id for e in await repository.list_events(root_event_id=root.id)] == [root.id]
    assert await repository.list_queue_items(node_id="B") == []


@pytest.mark.asyncio
async def test_redelivered_queue_item_runs_once(repository, scenario_registry):
    pipeline = Pipeline(repository, scenario_registry)
    dispatcher = WorkflowDispatcher(repository, scenario_registry)
    await dispatcher.register_workflow(_check_then_echo())
    await dispatcher.fire("wf", "T", "webhook.received", {"value": 3})
    await pipeline.router.route_once()

    [item] = await repository.list_queue_items(node_id="A")
    # the broker hands the same item to a second worker
    await pipeline.transport.publish(DEFAULT_QUEUE_TOPIC, QueueMessage.for_item(item).bump_attempt())
    assert await pipeline.deliver_all() == 2

    executions = await repository.list_executions(workflow_id="wf")
    assert [e.node_id for e in executions] == ["A"]
    assert pipeline.transport.unacked == 0


@pytest.mark.asyncio
async def test_trigger_webhook_starts_workflow(repository, scenario_registry):
    pipeline = Pipeline(repository, scenario_registry)
    dispatcher = WorkflowDispatcher(repository, scenario_registry)
    await dispatcher.register_workflow(_check_then_echo())

    status = await dispatcher.handle_trigger_webhook(
        "wf", "T", WebhookRequest(body=b'{"value": 8}')
    )
    await pipeline.settle()

    assert status == 200
    executions = await repository.list_executions(workflow_id="wf")
    assert [e.state for e in executions] == [ExecutionState.COMPLETED, ExecutionState.COMPLETED]
    assert executions[1].input_data == {"checked": 8, "ok": True}
