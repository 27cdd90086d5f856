"""Transport tests."""

from types import SimpleNamespace

import pytest

from flowcore.contracts import QueueMessage
from flowcore.transports.inmemory import InMemoryTransport


def _message(item_id="item-1"):
    return QueueMessage(queue_item_id=item_id, workflow_id="wf", node_id="a", event_id="ev")


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    await transport.publish("test_topic", _message())

    message_received = False
    async for raw_msg, received_msg in transport.subscribe("test_topic"):
        assert received_msg.queue_item_id == "item-1"
        assert transport.unacked == 1
        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.unacked == 0
    assert transport.pending("test_topic") == 0


@pytest.mark.asyncio
async def test_subscribe_lifespan_ends_iteration():
    transport = InMemoryTransport(poll_interval=0.01)
    received = [m async for _, m in transport.subscribe("empty", lifespan=0.05)]
    assert received == []


@pytest.mark.asyncio
async def test_nack_requeue_redelivers():
    transport = InMemoryTransport()
    await transport.publish("q", _message())

    raw, _ = await transport.get("q")
    await transport.nack(raw, requeue=True)
    assert transport.pending("q") == 1

    raw, message = await transport.get("q")
    assert message.queue_item_id == "item-1"
    await transport.ack(raw)
    assert await transport.get("q") is None


@pytest.mark.asyncio
async def test_nack_without_requeue_dead_letters():
    transport = InMemoryTransport()
    await transport.publish("q", _message())

    raw, _ = await transport.get("q")
    await transport.nack(raw, requeue=False)
    assert transport.pending("q") == 0
    assert len(transport.dead_letters) == 1
    assert transport.unacked == 0


@pytest.mark.asyncio
async def test_topics_are_isolated():
    transport = InMemoryTransport()
    await transport.publish("a", _message("one"))
    await transport.publish("b", _message("two"))
    _, message = await transport.get("b")
    assert message.queue_item_id == "two"
    assert transport.pending("a") == 1


def test_queue_message_json_and_bump_attempt():
    message = _message()
    assert set(message.model_dump()) == {
        "message_id",
        "queue_item_id",
        "workflow_id",
        "node_id",
        "event_id",
        "attempt",
        "timestamp",
    }
    restored = QueueMessage.from_json(message.to_json())
    assert restored == message

    bumped = message.bump_attempt()
    assert bumped.attempt == message.attempt + 1
    assert bumped.message_id != message.message_id
    assert bumped.queue_item_id == message.queue_item_id


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Redis transport can be imported and instantiated without a server."""
    try:
        from flowcore.transports.redis import RedisTransport

        try:
            transport = RedisTransport()
            assert transport.host == "localhost"
            assert transport.port == 6379
        except ImportError:
            pass
    except ImportError:
        pytest.fail("RedisTransport should be importable")


class _RecordingConsumer:
    def __init__(self):
        self.commits = []
        self.seeks = []

    async def commit(self, offsets):
        self.commits.append({(tp.topic, tp.partition): offset for tp, offset in offsets.items()})

    def seek(self, tp, offset):
        self.seeks.append((tp.partition, offset))


def _kafka_transport():
    from flowcore.transports.kafka import KafkaTransport

    transport = KafkaTransport()
    transport._consumer = _RecordingConsumer()
    return transport


def _record(offset, partition=0):
    return SimpleNamespace(topic="work", partition=partition, offset=offset, value=b"{}")


@pytest.mark.asyncio
async def test_kafka_commit_waits_for_lower_offsets():
    transport = _kafka_transport()
    first, second = _record(5), _record(6)
    transport._track(first)
    transport._track(second)

    await transport.ack(second)
    assert transport._consumer.commits == []

    await transport.ack(first)
    assert transport._consumer.commits == [{("work", 0): 7}]


@pytest.mark.asyncio
async def test_kafka_requeued_offset_holds_back_commits():
    transport = _kafka_transport()
    first, second = _record(5), _record(6)
    transport._track(first)
    transport._track(second)

    await transport.nack(first, requeue=True)
    await transport.ack(second)
    assert transport._consumer.seeks == [(0, 5)]
    assert transport._consumer.commits == []

    # the requeued record is read again and succeeds
    transport._track(_record(5))
    await transport.ack(_record(5))
    assert transport._consumer.commits == [{("work", 0): 7}]


@pytest.mark.asyncio
async def test_kafka_partitions_commit_independently():
    transport = _kafka_transport()
    transport._track(_record(3, partition=0))
    transport._track(_record(8, partition=1))

    await transport.ack(_record(8, partition=1))

    assert transport._consumer.commits == [{("work", 1): 9}]
