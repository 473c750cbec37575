"""Delivery log — append-only record of every attempt.

Rows are written in the same transaction as the subscription's health
counters and committed before the bus message is acked, so operators can
read in-flight state. Result order is not part of the contract; page with
the opaque cursor.
"""

import asyncio
import base64
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.errors import RegistryError
from eventrelay.models import AttemptOutcome, DeliveryAttempt

MAX_PAGE_SIZE = 200


def _all(result) -> list:
    return list(result.scalars().all())


def encode_cursor(attempt: DeliveryAttempt) -> str:
    raw = f"{attempt.started_at.isoformat()}|{attempt.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        started_at, attempt_id = raw.split("|", 1)
        return datetime.fromisoformat(started_at), attempt_id
    except (ValueError, UnicodeError) as exc:
        raise ValueError("Malformed cursor") from exc


class DeliveryLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], db_timeout: float = 5.0):
        self.session_factory = session_factory
        self.db_timeout = db_timeout

    async def _read(self, stmt, collect):
        async def op():
            async with self.session_factory() as session:
                return collect(await session.execute(stmt))

        try:
            return await asyncio.wait_for(op(), self.db_timeout)
        except SQLAlchemyError as exc:
            raise RegistryError(f"Delivery log error: {exc.__class__.__name__}") from exc
        except asyncio.TimeoutError as exc:
            raise RegistryError("Delivery log timed out") from exc

    # ── writes (caller owns the transaction) ────────────

    @staticmethod
    async def append(session: AsyncSession, attempt: DeliveryAttempt) -> DeliveryAttempt:
        session.add(attempt)
        await session.flush()
        return attempt

    @staticmethod
    async def count_give_ups(session: AsyncSession, subscription_id: str, since: datetime) -> int:
        """Attempts that exhausted their retries since ``since``."""
        result = await session.execute(
            select(func.count(DeliveryAttempt.id)).where(
                DeliveryAttempt.subscription_id == subscription_id,
                DeliveryAttempt.outcome == AttemptOutcome.PERMANENT_FAILURE.value,
                DeliveryAttempt.error_reason == "max_retries_exceeded",
                DeliveryAttempt.finished_at >= since,
            )
        )
        return result.scalar_one()

    # ── reads ────────────────────────────────────────────

    async def next_attempt_number(self, subscription_id: str, event_id: str) -> int:
        current = await self._read(
            select(func.max(DeliveryAttempt.attempt_number)).where(
                DeliveryAttempt.subscription_id == subscription_id,
                DeliveryAttempt.event_id == event_id,
            ),
            lambda result: result.scalar_one_or_none(),
        )
        return (current or 0) + 1

    async def attempted(self, event_id: str) -> dict[str, int]:
        """Highest recorded attempt number per subscription for one event."""
        return await self._read(
            select(DeliveryAttempt.subscription_id, func.max(DeliveryAttempt.attempt_number))
            .where(DeliveryAttempt.event_id == event_id)
            .group_by(DeliveryAttempt.subscription_id),
            lambda result: {subscription_id: number for subscription_id, number in result.all()},
        )

    async def recent(self, subscription_id: str, limit: int = 20) -> list[DeliveryAttempt]:
        """Latest attempts for a subscription, newest first."""
        return await self._read(
            select(DeliveryAttempt)
            .where(DeliveryAttempt.subscription_id == subscription_id)
            .order_by(DeliveryAttempt.started_at.desc(), DeliveryAttempt.id.desc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE))),
            _all,
        )

    async def for_subscription(
        self,
        subscription_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> tuple[list[DeliveryAttempt], Optional[str]]:
        """Attempts in ``[since, until)`` plus a cursor for the next page."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = select(DeliveryAttempt).where(DeliveryAttempt.subscription_id == subscription_id)
        if since is not None:
            stmt = stmt.where(DeliveryAttempt.started_at >= since)
        if until is not None:
            stmt = stmt.where(DeliveryAttempt.started_at < until)
        if cursor:
            after_started, after_id = decode_cursor(cursor)
            stmt = stmt.where(
                or_(
                    DeliveryAttempt.started_at < after_started,
                    and_(DeliveryAttempt.started_at == after_started, DeliveryAttempt.id < after_id),
                )
            )
        stmt = stmt.order_by(DeliveryAttempt.started_at.desc(), DeliveryAttempt.id.desc()).limit(limit + 1)
        rows = await self._read(stmt, _all)
        next_cursor = encode_cursor(rows[limit - 1]) if len(rows) > limit else None
        return rows[:limit], next_cursor

    async def for_event(self, event_id: str) -> list[DeliveryAttempt]:
        return await self._read(
            select(DeliveryAttempt)
            .where(DeliveryAttempt.event_id == event_id)
            .order_by(DeliveryAttempt.subscription_id, DeliveryAttempt.attempt_number),
            _all,
        )

    async def purge_older_than(self, cutoff: datetime) -> int:
        async def op():
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(DeliveryAttempt).where(DeliveryAttempt.finished_at < cutoff)
                )
                await session.commit()
                return result.rowcount

        try:
            return await asyncio.wait_for(op(), self.db_timeout)
        except SQLAlchemyError as exc:
            raise RegistryError(f"Delivery log error: {exc.__class__.__name__}") from exc
