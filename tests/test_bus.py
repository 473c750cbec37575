"""Tests for the message-bus backends."""

import asyncio

import pytest
import pytest_asyncio

from eventrelay.errors import BusError
from eventrelay.services.bus import InMemoryBus, RedisStreamBus

TOPIC = "events.primary"


# ── In-memory loopback ───────────────────────────────────
@pytest.mark.asyncio
async def test_publish_receive_ack():
    bus = InMemoryBus(lease_duration=30)
    msg_id = await bus.publish(TOPIC, b"hello", attributes={"attempt_number": 2})
    message, lease = await bus.receive(TOPIC)
    assert message.id == msg_id
    assert message.data == b"hello"
    assert message.redelivery_count == 0
    assert message.attributes == {"attempt_number": "2"}
    assert message.ack_deadline is not None
    await lease.ack()
    assert lease.settled
    assert bus.pending(TOPIC) == 0
    assert await bus.receive(TOPIC) is None


@pytest.mark.asyncio
async def test_nack_redelivers_with_higher_count():
    bus = InMemoryBus(lease_duration=30)
    await bus.publish(TOPIC, b"x")
    _, lease = await bus.receive(TOPIC)
    await lease.nack()
    message, lease = await bus.receive(TOPIC)
    assert message.redelivery_count == 1
    await lease.ack()


@pytest.mark.asyncio
async def test_expired_lease_is_redelivered():
    bus = InMemoryBus(lease_duration=0.05)
    await bus.publish(TOPIC, b"x")
    first, stale = await bus.receive(TOPIC)
    assert await bus.receive(TOPIC, timeout=0) is None
    again, lease = await bus.receive(TOPIC, timeout=1.0)
    assert again.id == first.id
    assert again.redelivery_count == 1
    # The stale lease no longer owns the message
    await stale.ack()
    assert bus.pending(TOPIC) == 1
    await lease.ack()
    assert bus.pending(TOPIC) == 0


@pytest.mark.asyncio
async def test_extend_keeps_message_leased():
    bus = InMemoryBus(lease_duration=0.1)
    await bus.publish(TOPIC, b"x")
    _, lease = await bus.receive(TOPIC)
    await lease.extend(10)
    await asyncio.sleep(0.15)
    assert await bus.receive(TOPIC, timeout=0) is None
    await lease.ack()


@pytest.mark.asyncio
async def test_extend_after_expiry_fails():
    bus = InMemoryBus(lease_duration=0.01)
    await bus.publish(TOPIC, b"x")
    _, lease = await bus.receive(TOPIC)
    await asyncio.sleep(0.05)
    with pytest.raises(BusError):
        await lease.extend(10)


@pytest.mark.asyncio
async def test_receive_waits_for_publish():
    bus = InMemoryBus()

    async def later():
        await asyncio.sleep(0.05)
        await bus.publish(TOPIC, b"late")

    task = asyncio.create_task(later())
    received = await bus.receive(TOPIC, timeout=1.0)
    await task
    assert received is not None
    assert received[0].data == b"late"


@pytest.mark.asyncio
async def test_closed_bus_refuses_publish():
    bus = InMemoryBus()
    await bus.close()
    with pytest.raises(BusError):
        await bus.publish(TOPIC, b"x")


@pytest.mark.asyncio
async def test_subscribe_runs_handler_and_cancels():
    bus = InMemoryBus()
    bus.poll_timeout = 0.05
    seen = []

    async def handler(message, lease):
        seen.append(message.data)
        await lease.ack()

    subscription = bus.subscribe(TOPIC, handler, concurrency=2)
    for i in range(5):
        await bus.publish(TOPIC, str(i).encode())
    for _ in range(100):
        if len(seen) == 5:
            break
        await asyncio.sleep(0.01)
    subscription.cancel()
    assert await subscription.wait(1.0)
    assert sorted(seen) == [b"0", b"1", b"2", b"3", b"4"]
    assert bus.pending(TOPIC) == 0


@pytest.mark.asyncio
async def test_subscribe_nacks_when_handler_raises():
    bus = InMemoryBus()
    bus.poll_timeout = 0.05
    calls = []

    async def handler(message, lease):
        calls.append(message.redelivery_count)
        if message.redelivery_count == 0:
            raise RuntimeError("boom")
        await lease.ack()

    subscription = bus.subscribe(TOPIC, handler)
    await bus.publish(TOPIC, b"x")
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    subscription.cancel()
    await subscription.wait(1.0)
    assert calls[:2] == [0, 1]


# ── Redis Streams (fakeredis) ────────────────────────────
@pytest_asyncio.fixture
async def redis_bus():
    fakeredis = pytest.importorskip("fakeredis")
    bus = RedisStreamBus(fakeredis.FakeAsyncRedis(), group="test", consumer="c1", lease_duration=30)
    yield bus
    await bus.close()


@pytest.mark.asyncio
async def test_redis_publish_receive_ack(redis_bus):
    msg_id = await redis_bus.publish(TOPIC, b"payload", attributes={"subscription_id": "s1"})
    message, lease = await redis_bus.receive(TOPIC)
    assert message.id == msg_id
    assert message.data == b"payload"
    assert message.attributes == {"subscription_id": "s1"}
    assert message.redelivery_count == 0
    await lease.ack()
    assert lease.settled
    assert await redis_bus.receive(TOPIC) is None


@pytest.mark.asyncio
async def test_redis_empty_topic(redis_bus):
    assert await redis_bus.receive("events.empty") is None


@pytest.mark.asyncio
async def test_redis_nack_redelivers_with_count(redis_bus):
    await redis_bus.publish(TOPIC, b"payload")
    counts = []
    for _ in range(3):
        message, lease = await redis_bus.receive(TOPIC)
        assert message.data == b"payload"
        counts.append(message.redelivery_count)
        await lease.nack()
    assert counts == [0, 1, 2]


@pytest.mark.asyncio
async def test_redis_unacked_lease_expires(redis_bus):
    redis_bus.lease_duration = 0.05
    await redis_bus.publish(TOPIC, b"payload")
    first, _ = await redis_bus.receive(TOPIC)
    assert await redis_bus.receive(TOPIC) is None

    await asyncio.sleep(0.1)
    again, lease = await redis_bus.receive(TOPIC)
    assert again.id == first.id
    assert again.redelivery_count == 1
    await lease.ack()
    assert await redis_bus.receive(TOPIC) is None


@pytest.mark.asyncio
async def test_redis_extend_keeps_lease(redis_bus):
    redis_bus.lease_duration = 0.2
    await redis_bus.publish(TOPIC, b"payload")
    _, lease = await redis_bus.receive(TOPIC)

    await asyncio.sleep(0.15)
    await lease.extend(0.2)
    await asyncio.sleep(0.1)
    # Idle time was reset by the extension, so nobody can reclaim it yet
    assert await redis_bus.receive(TOPIC) is None
    await lease.ack()


@pytest.mark.asyncio
async def test_redis_trimmed_pending_entry_is_dropped(redis_bus):
    msg_id = await redis_bus.publish(TOPIC, b"payload")
    _, lease = await redis_bus.receive(TOPIC)
    await redis_bus._redis.xdel(TOPIC, msg_id)
    await lease.nack()

    assert await redis_bus.receive(TOPIC) is None
    assert await redis_bus.receive(TOPIC) is None
