"""Per-subscription health tracking and automatic disablement."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.errors import BusError
from eventrelay.models import AttemptOutcome, SubscriptionState, utcnow
from eventrelay.services.bus import MessageBus
from eventrelay.services.codec import encode, new_event
from eventrelay.services.delivery_log import DeliveryLog
from eventrelay.services.event_types import AUTO_DISABLED
from eventrelay.services.subscriptions import SubscriptionRecord, SubscriptionRegistry

logger = logging.getLogger(__name__)

DISABLEABLE_STATES = (SubscriptionState.ACTIVE, SubscriptionState.PENDING_VERIFICATION)


@dataclass
class HealthChange:
    consecutive_failures: Optional[int] = None
    disabled: bool = False
    reason: Optional[str] = None


class HealthMonitor:
    """Circuit breaker fed with the outcome of every attempt.

    ``observe`` runs inside the caller's transaction, next to the attempt
    insert. The disable transition is a conditional update, so concurrent
    deliveries for one subscription disable it (and alert) exactly once.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        bus: MessageBus,
        alert_topic: str,
        consecutive_threshold: int = 20,
        give_up_threshold: int = 5,
        window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.bus = bus
        self.alert_topic = alert_topic
        self.consecutive_threshold = consecutive_threshold
        self.give_up_threshold = give_up_threshold
        self.window = window
        self.clock = clock

    async def observe(
        self,
        session: AsyncSession,
        subscription: SubscriptionRecord,
        outcome: AttemptOutcome,
        reason: Optional[str],
        at: datetime,
        gave_up: bool = False,
    ) -> HealthChange:
        if outcome == AttemptOutcome.SKIPPED:
            return HealthChange()

        if outcome == AttemptOutcome.SUCCESS:
            count = await self.registry.record_delivery(session, subscription.id, at, success=True)
            return HealthChange(consecutive_failures=count)

        if outcome == AttemptOutcome.PERMANENT_FAILURE and not gave_up:
            count = await self.registry.record_delivery(session, subscription.id, at, success=False)
            if reason == "endpoint_retired":
                return await self._disable(session, subscription, count, reason)
            return HealthChange(consecutive_failures=count)

        # Transient failure, possibly the one that exhausted the retries
        count = await self.registry.record_delivery(
            session, subscription.id, at, success=False, count_failure=True
        )
        if count is not None and count >= self.consecutive_threshold:
            return await self._disable(session, subscription, count, "consecutive_failures")
        if gave_up:
            give_ups = await DeliveryLog.count_give_ups(session, subscription.id, at - self.window)
            if give_ups >= self.give_up_threshold:
                return await self._disable(session, subscription, count, "repeated_give_ups")
        return HealthChange(consecutive_failures=count)

    async def _disable(
        self,
        session: AsyncSession,
        subscription: SubscriptionRecord,
        count: Optional[int],
        reason: str,
    ) -> HealthChange:
        changed = await self.registry.transition_state(
            session,
            subscription.id,
            SubscriptionState.DISABLED_BY_SYSTEM,
            reason,
            from_states=DISABLEABLE_STATES,
        )
        return HealthChange(consecutive_failures=count, disabled=changed, reason=reason)

    async def alert(self, subscription: SubscriptionRecord, change: HealthChange) -> None:
        """Emit ``subscription.auto_disabled`` on the alerts topic."""
        logger.warning(
            f"Subscription {subscription.id} ({subscription.url}) auto-disabled: {change.reason}"
        )
        event = new_event(
            AUTO_DISABLED,
            subscription.tenant,
            {
                "subscription_id": subscription.id,
                "app_id": subscription.app_id,
                "url": subscription.url,
                "reason": change.reason,
                "consecutive_failures": change.consecutive_failures,
            },
            now=self.clock(),
        )
        try:
            await self.bus.publish(self.alert_topic, encode(event), attributes={"event_type": event.type})
        except BusError as exc:
            # The state change is already durable; only the notification is lost
            logger.error(f"Could not publish auto-disable alert for {subscription.id}: {exc}")
