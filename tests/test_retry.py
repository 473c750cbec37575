"""Tests for the retry policy, retry queue and sweeper."""

import random
from datetime import timedelta

import pytest

from conftest import APP_ID, TENANT
from eventrelay.errors import BusError
from eventrelay.models import AttemptOutcome, DeliveryAttempt
from eventrelay.services.retry import DEFAULT_SCHEDULE, GIVE_UP, RetryPolicy


# ── Policy ───────────────────────────────────────────────
def test_delays_follow_schedule_within_jitter():
    policy = RetryPolicy(rng=random.Random(1))
    for n, base in enumerate(DEFAULT_SCHEDULE, start=1):
        for _ in range(50):
            delay = policy.next_delay(n)
            assert base * 0.8 <= delay <= base * 1.2


def test_give_up_at_max_attempts():
    policy = RetryPolicy(max_attempts=7)
    assert policy.next_delay(6) is not GIVE_UP
    assert policy.next_delay(7) is GIVE_UP
    assert policy.next_delay(8) is GIVE_UP


def test_short_schedule_repeats_last_delay():
    policy = RetryPolicy(schedule=[10, 20], max_attempts=10, jitter=0)
    assert [policy.next_delay(n) for n in range(1, 6)] == [10, 20, 20, 20, 20]


def test_delay_clamped():
    policy = RetryPolicy(schedule=[100_000], max_attempts=3, jitter=0, max_delay=86400)
    assert policy.next_delay(1) == 86400


def test_jitter_is_seeded():
    a = RetryPolicy(rng=random.Random(3))
    b = RetryPolicy(rng=random.Random(3))
    assert [a.next_delay(1) for _ in range(5)] == [b.next_delay(1) for _ in range(5)]


def test_invalid_arguments():
    with pytest.raises(ValueError):
        RetryPolicy(schedule=[])
    with pytest.raises(ValueError):
        RetryPolicy().next_delay(0)


def test_from_settings(settings):
    policy = RetryPolicy.from_settings(settings)
    assert policy.max_attempts == settings.max_attempts
    assert list(policy.schedule) == settings.retry_schedule


# ── Queue and sweeper ────────────────────────────────────
async def _enqueue(components, clock, delay: float, attempt_number: int = 2, event_id: str = "e1"):
    async with components.session_factory() as session:
        await components.retry_queue.enqueue(
            session, "sub-1", event_id, attempt_number, clock() + timedelta(seconds=delay), b"{}"
        )
        await session.commit()


@pytest.mark.asyncio
async def test_sweep_publishes_only_due_rows(components, clock):
    await _enqueue(components, clock, 30, event_id="soon")
    await _enqueue(components, clock, 600, event_id="later")

    assert await components.sweeper.sweep_once() == 0
    clock.advance(31)
    assert await components.sweeper.sweep_once() == 1

    message, lease = await components.bus.receive(components.settings.topic_retry)
    assert message.attributes == {"subscription_id": "sub-1", "attempt_number": "2", "event_id": "soon"}
    await lease.ack()
    remaining = await components.retry_queue.pending_for("sub-1")
    assert [e.event_id for e in remaining] == ["later"]


@pytest.mark.asyncio
async def test_claim_is_exclusive(components, clock):
    await _enqueue(components, clock, 0)
    entry = (await components.retry_queue.due(clock()))[0]
    published = []

    async def publish():
        published.append(entry.id)

    assert await components.retry_queue.claim(entry.id, publish)
    assert not await components.retry_queue.claim(entry.id, publish)
    assert published == [entry.id]


@pytest.mark.asyncio
async def test_failed_publish_keeps_row(components, clock):
    await _enqueue(components, clock, 0)
    entry = (await components.retry_queue.due(clock()))[0]

    async def publish():
        raise BusError("bus down")

    with pytest.raises(BusError):
        await components.retry_queue.claim(entry.id, publish)
    assert len(await components.retry_queue.due(clock())) == 1


@pytest.mark.asyncio
async def test_purge_removes_old_attempts(components, clock):
    record, _ = await components.registry.create(TENANT, APP_ID, "https://hooks.example.com/a")
    old = clock() - timedelta(days=31)
    async with components.session_factory() as session:
        for n, at in enumerate([old, clock()], start=1):
            await components.delivery_log.append(
                session,
                DeliveryAttempt(
                    subscription_id=record.id,
                    event_id="e1",
                    event_type="order.created",
                    attempt_number=n,
                    outcome=AttemptOutcome.SUCCESS.value,
                    started_at=at,
                    finished_at=at,
                ),
            )
        await session.commit()

    assert await components.sweeper.purge_once() == 1
    remaining = await components.delivery_log.recent(record.id)
    assert [a.attempt_number for a in remaining] == [2]
