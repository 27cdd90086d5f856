"""Event router tests."""

import pytest

from flowcore.constants import DEFAULT_QUEUE_TOPIC
from flowcore.errors import RepositoryError
from flowcore.persistence import inmemory
from flowcore.persistence.models import (
    Edge,
    EventRecord,
    EventState,
    Node,
    QueueItemRecord,
    WorkflowDefinition,
)
from flowcore.predicates import equals, matches


def _fan_out(n=3):
    return WorkflowDefinition(
        id="wf",
        nodes=[Node(id="t", kind="trigger", ref="webhook")]
        + [Node(id=f"n{i}", ref="echo") for i in range(n)],
        edges=[Edge(source_id="t", target_id=f"n{i}") for i in range(n)],
    )


async def _root_event(repository, data=None, workflow_id="wf"):
    return await repository.create_event(
        EventRecord(workflow_id=workflow_id, node_id="t", type="webhook.received", data=data)
    )


@pytest.mark.asyncio
async def test_routes_one_item_per_downstream_node(pipeline, repository):
    await repository.save_workflow(_fan_out(3))
    event = await _root_event(repository, {"x": 1})

    assert await pipeline.router.route_once() == 1

    items = await repository.list_queue_items(event_id=event.id)
    assert [i.node_id for i in items] == ["n0", "n1", "n2"]
    assert all(i.published_at is not None for i in items)
    assert pipeline.transport.pending(DEFAULT_QUEUE_TOPIC) == 3
    assert (await repository.get_event(event.id)).state == EventState.ROUTED


@pytest.mark.asyncio
async def test_repeated_routing_never_duplicates_items(pipeline, repository):
    await repository.save_workflow(_fan_out(3))
    event = await _root_event(repository)

    await pipeline.router.route_once()
    assert await pipeline.router.route_once() == 0
    async with repository.claim_pending_events(10) as claim:
        assert claim.events == []

    assert len(await repository.list_queue_items(event_id=event.id)) == 3


@pytest.mark.asyncio
async def test_interrupted_routing_is_completed_on_retry(pipeline, repository):
    await repository.save_workflow(_fan_out(3))
    event = await _root_event(repository)
    # a previous pass wrote one item and died before marking the event
    await repository.create_queue_item(
        QueueItemRecord(workflow_id="wf", node_id="n1", event_id=event.id, root_event_id=event.id)
    )

    assert await pipeline.router.route_once() == 1
    assert await pipeline.router.route_once() == 0

    items = await repository.list_queue_items(event_id=event.id)
    assert sorted(i.node_id for i in items) == ["n0", "n1", "n2"]
    assert (await repository.get_event(event.id)).state == EventState.ROUTED


@pytest.mark.asyncio
async def test_event_without_downstream_is_marked_routed(pipeline, repository):
    await repository.save_workflow(_fan_out(0))
    event = await _root_event(repository)

    assert await pipeline.router.route_once() == 1
    assert (await repository.get_event(event.id)).state == EventState.ROUTED
    assert await repository.list_queue_items(event_id=event.id) == []


@pytest.mark.asyncio
async def test_bad_event_does_not_block_batch(pipeline, repository):
    await repository.save_workflow(_fan_out(1))
    orphan = await _root_event(repository, workflow_id="deleted")
    good = await _root_event(repository)

    assert await pipeline.router.route_once() == 1
    assert (await repository.get_event(orphan.id)).state == EventState.PENDING
    assert (await repository.get_event(good.id)).state == EventState.ROUTED


@pytest.mark.asyncio
async def test_predicates_select_edges(pipeline, repository):
    await repository.save_workflow(
        WorkflowDefinition(
            id="wf",
            nodes=[
                Node(id="t", kind="trigger", ref="webhook"),
                Node(id="ok", ref="echo"),
                Node(id="ko", ref="echo"),
            ],
            edges=[
                Edge(source_id="t", target_id="ok", predicate=equals("passed")),
                Edge(source_id="t", target_id="ko", predicate=matches("^fail.*")),
            ],
        )
    )
    passed = await _root_event(repository, "passed")
    failed = await _root_event(repository, "failed-timeout")

    assert await pipeline.router.route_once() == 2
    assert [i.node_id for i in await repository.list_queue_items(event_id=passed.id)] == ["ok"]
    assert [i.node_id for i in await repository.list_queue_items(event_id=failed.id)] == ["ko"]


@pytest.mark.asyncio
async def test_store_failure_leaves_event_pending(pipeline, repository, monkeypatch):
    await repository.save_workflow(_fan_out(2))
    event = await _root_event(repository)
    original = inmemory._InMemoryClaim.route
    calls = []

    async def flaky_route(self, event, node_ids):
        calls.append(event.id)
        if len(calls) == 1:
            raise RepositoryError("connection reset")
        return await original(self, event, node_ids)

    monkeypatch.setattr(inmemory._InMemoryClaim, "route", flaky_route)

    assert await pipeline.router.route_once() == 0
    assert (await repository.get_event(event.id)).state == EventState.PENDING
    assert await pipeline.router.route_once() == 1
    assert len(await repository.list_queue_items(event_id=event.id)) == 2


@pytest.mark.asyncio
async def test_publish_failure_is_reconciled_by_sweep(pipeline, repository, monkeypatch):
    await repository.save_workflow(_fan_out(2))
    event = await _root_event(repository)

    async def broken_publish(topic, message):
        raise ConnectionError("broker down")

    original_publish = pipeline.transport.publish
    monkeypatch.setattr(pipeline.transport, "publish", broken_publish)
    assert await pipeline.router.route_once() == 1
    assert (await repository.get_event(event.id)).state == EventState.ROUTED
    assert len(await repository.list_unpublished_queue_items(10)) == 2

    monkeypatch.setattr(pipeline.transport, "publish", original_publish)
    assert await pipeline.outbox.sweep() == 2
    assert await repository.list_unpublished_queue_items(10) == []
    assert pipeline.transport.pending(DEFAULT_QUEUE_TOPIC) == 2


@pytest.mark.asyncio
async def test_run_loop_routes_until_lifespan(pipeline, repository):
    await repository.save_workflow(_fan_out(1))
    event = await _root_event(repository)
    pipeline.router.poll_interval = 0.01

    await pipeline.router.run(lifespan=0.05)

    assert (await repository.get_event(event.id)).state == EventState.ROUTED
