"""Retry scheduling — jittered back-off policy plus a DB-backed retry queue.

Retries are materialized in the ``retry_queue`` table, written in the same
transaction as the failed attempt. ``RetrySweeper`` republishes due rows on
the retry topic, targeted at a single subscription through message
attributes.
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.errors import BusError, RegistryError
from eventrelay.models import RetryQueueEntry, utcnow
from eventrelay.services.bus import MessageBus
from eventrelay.services.delivery_log import DeliveryLog

logger = logging.getLogger(__name__)

# next_delay() result meaning "stop retrying"
GIVE_UP = None

DEFAULT_SCHEDULE = (30.0, 120.0, 600.0, 1800.0, 7200.0, 21600.0)


class RetryPolicy:
    """Pure back-off policy: ``next_delay(n)`` after attempt ``n`` failed."""

    def __init__(
        self,
        schedule: Sequence[float] = DEFAULT_SCHEDULE,
        max_attempts: int = 7,
        jitter: float = 0.2,
        max_delay: float = 86400.0,
        rng: Optional[random.Random] = None,
    ):
        if not schedule:
            raise ValueError("Retry schedule must not be empty")
        self.schedule = tuple(schedule)
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            schedule=settings.retry_schedule,
            max_attempts=settings.max_attempts,
            jitter=settings.retry_jitter,
            max_delay=settings.retry_max_delay,
            rng=rng,
        )

    def next_delay(self, attempt_number: int) -> Optional[float]:
        """Seconds to wait before attempt ``attempt_number + 1``, or GIVE_UP."""
        if attempt_number < 1:
            raise ValueError("attempt_number starts at 1")
        if attempt_number >= self.max_attempts:
            return GIVE_UP
        base = self.schedule[min(attempt_number, len(self.schedule)) - 1]
        factor = self._rng.uniform(1 - self.jitter, 1 + self.jitter)
        return min(base * factor, self.max_delay)


class RetryQueue:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], db_timeout: float = 5.0):
        self.session_factory = session_factory
        self.db_timeout = db_timeout

    @staticmethod
    async def enqueue(
        session: AsyncSession,
        subscription_id: str,
        event_id: str,
        attempt_number: int,
        not_before_at: datetime,
        event_bytes: bytes,
    ) -> RetryQueueEntry:
        entry = RetryQueueEntry(
            subscription_id=subscription_id,
            event_id=event_id,
            attempt_number=attempt_number,
            not_before_at=not_before_at,
            event_bytes=event_bytes,
        )
        session.add(entry)
        await session.flush()
        return entry

    async def _run(self, op: Awaitable):
        try:
            return await asyncio.wait_for(op, self.db_timeout)
        except SQLAlchemyError as exc:
            raise RegistryError(f"Retry queue error: {exc.__class__.__name__}") from exc
        except asyncio.TimeoutError as exc:
            raise RegistryError("Retry queue timed out") from exc

    async def due(self, now: datetime, limit: int = 100) -> list[RetryQueueEntry]:
        async def op():
            async with self.session_factory() as session:
                result = await session.execute(
                    select(RetryQueueEntry)
                    .where(RetryQueueEntry.not_before_at <= now)
                    .order_by(RetryQueueEntry.not_before_at)
                    .limit(limit)
                )
                return list(result.scalars().all())

        return await self._run(op())

    async def pending_for(self, subscription_id: str) -> list[RetryQueueEntry]:
        async def op():
            async with self.session_factory() as session:
                result = await session.execute(
                    select(RetryQueueEntry)
                    .where(RetryQueueEntry.subscription_id == subscription_id)
                    .order_by(RetryQueueEntry.not_before_at)
                )
                return list(result.scalars().all())

        return await self._run(op())

    async def claim(self, entry_id: str, publish: Callable[[], Awaitable]) -> bool:
        """Delete the row and publish it in one transaction.

        Concurrent sweepers race on the delete; only the winner publishes. If
        the publish fails the delete rolls back and the row stays due.
        """

        async def op():
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(RetryQueueEntry).where(RetryQueueEntry.id == entry_id)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False
                await publish()
                await session.commit()
                return True

        try:
            return await op()
        except SQLAlchemyError as exc:
            raise RegistryError(f"Retry queue error: {exc.__class__.__name__}") from exc


class RetrySweeper:
    """Republishes due retries and purges the delivery log past retention."""

    def __init__(
        self,
        queue: RetryQueue,
        bus: MessageBus,
        topic: str,
        delivery_log: DeliveryLog,
        interval: float = 5.0,
        batch_size: int = 100,
        retention: timedelta = timedelta(days=30),
        purge_interval: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.bus = bus
        self.topic = topic
        self.delivery_log = delivery_log
        self.interval = interval
        self.batch_size = batch_size
        self.retention = retention
        self.purge_interval = purge_interval
        self.clock = clock
        self._last_purge: Optional[datetime] = None

    async def sweep_once(self) -> int:
        """Publish every due retry; returns how many were published."""
        published = 0
        for entry in await self.queue.due(self.clock(), self.batch_size):
            attributes = {
                "subscription_id": entry.subscription_id,
                "attempt_number": entry.attempt_number,
                "event_id": entry.event_id,
            }

            async def publish(entry=entry, attributes=attributes):
                await self.bus.publish(self.topic, entry.event_bytes, attributes=attributes)

            if await self.queue.claim(entry.id, publish):
                published += 1
        if published:
            logger.info(f"Republished {published} due retries on {self.topic}")
        return published

    async def purge_once(self) -> int:
        cutoff = self.clock() - self.retention
        removed = await self.delivery_log.purge_older_than(cutoff)
        self._last_purge = self.clock()
        if removed:
            logger.info(f"Purged {removed} delivery attempts older than {cutoff.isoformat()}")
        return removed

    def _purge_due(self) -> bool:
        if self._last_purge is None:
            return True
        return (self.clock() - self._last_purge).total_seconds() >= self.purge_interval

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.sweep_once()
                if self._purge_due():
                    await self.purge_once()
            except (RegistryError, BusError) as exc:
                logger.error(f"Retry sweep failed: {exc}")
            try:
                await asyncio.wait_for(stop.wait(), self.interval)
            except asyncio.TimeoutError:
                pass
