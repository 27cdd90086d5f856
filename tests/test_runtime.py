"""Runtime composition tests."""

import asyncio

import pytest

from flowcore.config import FlowcoreConfig, OutboxConfig, ReaperConfig, RouterConfig
from flowcore.persistence.models import Edge, ExecutionState, Node, WorkflowDefinition
from flowcore.runtime import FlowcoreRuntime
from flowcore.transports.inmemory import InMemoryTransport


def _config():
    return FlowcoreConfig(
        router=RouterConfig(poll_interval=0.01),
        outbox=OutboxConfig(sweep_interval=0.01),
        reaper=ReaperConfig(sweep_interval=0.01),
    )


@pytest.mark.asyncio
async def test_runtime_runs_workflow_end_to_end(repository, registry):
    runtime = FlowcoreRuntime(
        registry,
        config=_config(),
        repository=repository,
        transport=InMemoryTransport(poll_interval=0.01),
    )
    await runtime.dispatcher.register_workflow(
        WorkflowDefinition(
            id="wf",
            nodes=[
                Node(id="t", kind="trigger", ref="webhook"),
                Node(id="a", ref="echo"),
                Node(id="b", ref="echo"),
            ],
            edges=[Edge(source_id="t", target_id="a"), Edge(source_id="a", target_id="b")],
        )
    )
    await runtime.dispatcher.fire("wf", "t", "manual", {"hello": "world"})

    await runtime.run(lifespan=0.5)

    executions = await repository.list_executions(workflow_id="wf")
    assert [e.node_id for e in executions] == ["a", "b"]
    assert all(e.state == ExecutionState.COMPLETED for e in executions)
    assert executions[1].input_data == {"hello": "world"}


@pytest.mark.asyncio
async def test_stop_ends_polling_services(repository, registry):
    runtime = FlowcoreRuntime(
        registry,
        config=_config(),
        repository=repository,
        transport=InMemoryTransport(poll_interval=0.01),
    )
    task = asyncio.create_task(runtime.router.run())
    await asyncio.sleep(0.03)
    runtime.stop()
    await asyncio.wait_for(task, timeout=1)
    assert task.done()


@pytest.mark.asyncio
async def test_stop_ends_open_ended_run(repository, registry, monkeypatch):
    transport = InMemoryTransport(poll_interval=0.01)
    disconnected = []

    async def record_disconnect():
        disconnected.append(True)

    monkeypatch.setattr(transport, "disconnect", record_disconnect)
    runtime = FlowcoreRuntime(registry, config=_config(), repository=repository, transport=transport)

    task = asyncio.create_task(runtime.run())
    await asyncio.sleep(0.05)
    runtime.stop()
    await asyncio.wait_for(task, timeout=1)

    assert disconnected == [True]


@pytest.mark.asyncio
async def test_stop_before_services_start(repository, registry):
    runtime = FlowcoreRuntime(
        registry,
        config=_config(),
        repository=repository,
        transport=InMemoryTransport(poll_interval=0.01),
    )
    task = asyncio.create_task(runtime.run())
    runtime.stop()
    await asyncio.wait_for(task, timeout=1)
    assert task.exception() is None
