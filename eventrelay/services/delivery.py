"""Delivery engine — one signed webhook attempt per call.

The engine keeps no state of its own. Each attempt's log row, the
subscription's health counters and any scheduled retry are written in one
transaction, so an attempt is durable before its bus message is acked.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.errors import (
    GoneError,
    InternalError,
    RegistryError,
    RejectError,
    TransportError,
)
from eventrelay.models import AttemptOutcome, DeliveryAttempt, utcnow
from eventrelay.services.codec import Event, encode, new_event
from eventrelay.services.delivery_log import DeliveryLog
from eventrelay.services.event_types import PING
from eventrelay.services.health import HealthChange, HealthMonitor
from eventrelay.services.retry import GIVE_UP, RetryPolicy, RetryQueue
from eventrelay.services.signer import SIGNATURE_HEADER, sign
from eventrelay.services.subscriptions import SubscriptionRecord, SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    subscription_id: str
    event_id: str
    attempt_number: int
    outcome: AttemptOutcome
    reason: Optional[str] = None
    response_status: Optional[int] = None
    retry_at: Optional[datetime] = None
    disabled: bool = False
    attempt_id: Optional[str] = None


def check_status(status: int) -> None:
    """Raise the error kind an HTTP status maps to; return for 2xx."""
    if 200 <= status < 300:
        return
    if status == 410:
        raise GoneError(f"HTTP {status}", status=status)
    if status == 408:
        raise TransportError(f"HTTP {status}", reason="request_timeout", status=status)
    if status == 429:
        raise TransportError(f"HTTP {status}", reason="rate_limited", status=status)
    if status >= 500:
        raise TransportError(f"HTTP {status}", reason="server_error", status=status)
    if 400 <= status < 500:
        raise RejectError(f"HTTP {status}", status=status)
    # Redirects are not followed
    raise RejectError(f"HTTP {status}", reason="unexpected_status", status=status)


async def _read_excerpt(response: httpx.Response, limit: int) -> str:
    buf = bytearray()
    async for chunk in response.aiter_bytes():
        buf.extend(chunk[: limit - len(buf)])
        if len(buf) >= limit:
            break
    return buf.decode("utf-8", errors="replace")


class DeliveryEngine:
    def __init__(
        self,
        http: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        registry: SubscriptionRegistry,
        delivery_log: DeliveryLog,
        retry_queue: RetryQueue,
        health: HealthMonitor,
        policy: RetryPolicy,
        timeout: float = 15.0,
        excerpt_bytes: int = 4096,
        user_agent: str = "eventrelay/0.1.0",
        db_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.http = http
        self.session_factory = session_factory
        self.registry = registry
        self.delivery_log = delivery_log
        self.retry_queue = retry_queue
        self.health = health
        self.policy = policy
        self.timeout = timeout
        self.excerpt_bytes = excerpt_bytes
        self.user_agent = user_agent
        self.db_timeout = db_timeout
        self.clock = clock

    # ── HTTP ─────────────────────────────────────────────

    def _headers(self, event: Event, subscription: SubscriptionRecord, body: bytes, attempt_number: int) -> dict:
        return {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign(self.registry.reveal_secret(subscription), body),
            "X-Webhook-Event-Id": event.id,
            "X-Webhook-Event-Type": event.type,
            "X-Webhook-Attempt": str(attempt_number),
            "Idempotency-Key": event.id,
            "User-Agent": self.user_agent,
        }

    async def _send(self, url: str, body: bytes, headers: dict) -> tuple[int, str]:
        async with self.http.stream(
            "POST", url, content=body, headers=headers, timeout=self.timeout
        ) as response:
            excerpt = await _read_excerpt(response, self.excerpt_bytes)
            return response.status_code, excerpt

    async def _post(self, url: str, body: bytes, headers: dict) -> tuple[int, str]:
        try:
            return await asyncio.wait_for(self._send(url, body, headers), self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransportError(f"POST {url} timed out", reason="timeout") from exc
        except httpx.ConnectError as exc:
            raise TransportError(f"POST {url} could not connect", reason="connection_error") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"POST {url} failed: {exc.__class__.__name__}") from exc

    # ── attempts ─────────────────────────────────────────

    async def deliver(
        self,
        event: Event,
        subscription: SubscriptionRecord,
        attempt_number: Optional[int] = None,
        body: Optional[bytes] = None,
        schedule_retry: bool = True,
    ) -> DeliveryResult:
        """Perform one attempt and record it. Raises RegistryError if it could not be recorded."""
        body = body if body is not None else encode(event)
        logged_next = await self.delivery_log.next_attempt_number(subscription.id, event.id)
        attempt_number = max(attempt_number or 1, logged_next)

        started_at = self.clock()
        started = time.monotonic()
        status: Optional[int] = None
        excerpt = ""
        try:
            headers = self._headers(event, subscription, body, attempt_number)
            status, excerpt = await self._post(subscription.url, body, headers)
            check_status(status)
            outcome, reason = AttemptOutcome.SUCCESS, None
        except RejectError as exc:
            outcome, reason = AttemptOutcome.PERMANENT_FAILURE, exc.reason
        except TransportError as exc:
            outcome, reason = AttemptOutcome.TRANSIENT_FAILURE, exc.reason
            logger.info(f"Attempt {attempt_number} of event {event.id} to {subscription.id} failed: {exc}")
        except Exception:
            logger.exception(f"Attempt {attempt_number} of event {event.id} to {subscription.id} crashed")
            outcome, reason = AttemptOutcome.TRANSIENT_FAILURE, InternalError.reason

        return await self._conclude(
            event,
            subscription,
            body,
            attempt_number,
            outcome,
            reason,
            status=status,
            excerpt=excerpt,
            started_at=started_at,
            duration_ms=int((time.monotonic() - started) * 1000),
            schedule_retry=schedule_retry,
        )

    async def record_internal_error(
        self,
        event: Event,
        subscription: SubscriptionRecord,
        attempt_number: int,
        body: Optional[bytes] = None,
    ) -> DeliveryResult:
        """Record an attempt that blew up outside the HTTP call as a transient failure."""
        attempt_number = max(
            attempt_number, await self.delivery_log.next_attempt_number(subscription.id, event.id)
        )
        return await self._conclude(
            event,
            subscription,
            body if body is not None else encode(event),
            attempt_number,
            AttemptOutcome.TRANSIENT_FAILURE,
            InternalError.reason,
            started_at=self.clock(),
        )

    async def skip(
        self, event: Event, subscription_id: str, attempt_number: int, reason: str
    ) -> DeliveryResult:
        """Log a ``skipped`` attempt for a subscription that is gone or inactive."""
        attempt_number = max(
            attempt_number, await self.delivery_log.next_attempt_number(subscription_id, event.id)
        )
        now = self.clock()
        attempt = DeliveryAttempt(
            subscription_id=subscription_id,
            event_id=event.id,
            event_type=event.type,
            attempt_number=attempt_number,
            outcome=AttemptOutcome.SKIPPED.value,
            error_reason=reason,
            started_at=now,
            finished_at=now,
        )

        async def op():
            async with self.session_factory() as session:
                await self.delivery_log.append(session, attempt)
                await session.commit()

        await self._guard(op())
        return DeliveryResult(
            subscription_id=subscription_id,
            event_id=event.id,
            attempt_number=attempt_number,
            outcome=AttemptOutcome.SKIPPED,
            reason=reason,
            attempt_id=attempt.id,
        )

    async def ping(self, subscription: SubscriptionRecord) -> DeliveryResult:
        """Synchronous ``webhook.ping``; a success verifies a pending subscription."""
        event = new_event(PING, subscription.tenant, {"subscription_id": subscription.id}, now=self.clock())
        result = await self.deliver(event, subscription, schedule_retry=False)
        if result.outcome == AttemptOutcome.SUCCESS:
            await self.registry.activate_verified(subscription.id)
        return result

    async def _conclude(
        self,
        event: Event,
        subscription: SubscriptionRecord,
        body: bytes,
        attempt_number: int,
        outcome: AttemptOutcome,
        reason: Optional[str],
        status: Optional[int] = None,
        excerpt: str = "",
        started_at: Optional[datetime] = None,
        duration_ms: int = 0,
        schedule_retry: bool = True,
    ) -> DeliveryResult:
        finished_at = self.clock()
        retry_at = None
        gave_up = False
        if outcome == AttemptOutcome.TRANSIENT_FAILURE and schedule_retry:
            delay = self.policy.next_delay(attempt_number)
            if delay is GIVE_UP:
                outcome, reason, gave_up = AttemptOutcome.PERMANENT_FAILURE, "max_retries_exceeded", True
            else:
                retry_at = finished_at + timedelta(seconds=delay)

        attempt = DeliveryAttempt(
            subscription_id=subscription.id,
            event_id=event.id,
            event_type=event.type,
            attempt_number=attempt_number,
            outcome=outcome.value,
            response_status=status,
            response_body_excerpt=excerpt,
            error_reason=reason,
            duration_ms=duration_ms,
            started_at=started_at or finished_at,
            finished_at=finished_at,
        )

        async def op() -> HealthChange:
            async with self.session_factory() as session:
                await self.delivery_log.append(session, attempt)
                change = await self.health.observe(
                    session, subscription, outcome, reason, finished_at, gave_up=gave_up
                )
                if retry_at is not None:
                    await self.retry_queue.enqueue(
                        session, subscription.id, event.id, attempt_number + 1, retry_at, body
                    )
                await session.commit()
                return change

        change = await self._guard(op())
        if change.disabled:
            self.registry.invalidate(subscription.tenant)
            await self.health.alert(subscription, change)

        logger.debug(
            f"Event {event.id} -> {subscription.id} attempt {attempt_number}: {outcome.value}"
            + (f" ({reason})" if reason else "")
        )
        return DeliveryResult(
            subscription_id=subscription.id,
            event_id=event.id,
            attempt_number=attempt_number,
            outcome=outcome,
            reason=reason,
            response_status=status,
            retry_at=retry_at,
            disabled=change.disabled,
            attempt_id=attempt.id,
        )

    async def _guard(self, op):
        try:
            return await asyncio.wait_for(op, self.db_timeout)
        except SQLAlchemyError as exc:
            raise RegistryError(f"Could not record attempt: {exc.__class__.__name__}") from exc
        except asyncio.TimeoutError as exc:
            raise RegistryError("Recording attempt timed out") from exc
