"""Dispatcher — the worker loop between the bus and the delivery engine.

Each puller handles one message at a time: decode, resolve the target
subscriptions, fan the deliveries out under a per-message cap, keep the lease
alive while any of them is in flight, then ack once every delivery has been
durably recorded (success, permanent failure, or a queued retry).
"""

import asyncio
import logging

from eventrelay.errors import BusError, DecodeError, RegistryError
from eventrelay.services.bus import Lease, Message, MessageBus, PullSubscription
from eventrelay.services.codec import Event, decode
from eventrelay.services.delivery import DeliveryEngine
from eventrelay.services.subscriptions import SubscriptionRecord, SubscriptionRegistry

logger = logging.getLogger(__name__)


def _attempt_number(message: Message) -> int:
    try:
        return max(1, int(message.attributes.get("attempt_number", 1)))
    except (TypeError, ValueError):
        return 1


class Dispatcher:
    def __init__(
        self,
        bus: MessageBus,
        registry: SubscriptionRegistry,
        engine: DeliveryEngine,
        topics: tuple[str, ...] = ("events.primary", "events.retry"),
        concurrency: int = 2,
        fanout: int = 16,
        lease_duration: float = 60.0,
        lease_extend_interval: float = 20.0,
        max_redeliveries: int = 10,
    ):
        self.bus = bus
        self.registry = registry
        self.engine = engine
        self.topics = topics
        self.concurrency = concurrency
        self.fanout = fanout
        self.lease_duration = lease_duration
        self.lease_extend_interval = lease_extend_interval
        self.max_redeliveries = max_redeliveries
        self._subscriptions: list[PullSubscription] = []

    def start(self) -> None:
        for topic in self.topics:
            self._subscriptions.append(self.bus.subscribe(topic, self.handle, self.concurrency))
        logger.info(f"Dispatcher pulling {', '.join(self.topics)} with {self.concurrency} workers each")

    async def stop(self, grace: float = 30.0) -> bool:
        """Stop pulling and wait up to ``grace`` seconds for in-flight messages.

        Returns False if pullers had to be cancelled; their messages are
        redelivered by the bus once the lease runs out.
        """
        for subscription in self._subscriptions:
            subscription.cancel()
        drained = True
        for subscription in self._subscriptions:
            if not await subscription.wait(grace):
                drained = False
                await subscription.abort()
        self._subscriptions.clear()
        if not drained:
            logger.warning("Dispatcher stopped with deliveries still in flight")
        return drained

    # ── per message ──────────────────────────────────────

    async def handle(self, message: Message, lease: Lease) -> None:
        if message.redelivery_count > self.max_redeliveries:
            logger.error(
                f"Dead-lettering message {message.id} on {message.topic} "
                f"after {message.redelivery_count} redeliveries"
            )
            await lease.ack()
            return

        try:
            event = decode(message.data)
        except DecodeError as exc:
            logger.warning(f"Dropping undecodable message {message.id} on {message.topic}: {exc}")
            await lease.ack()
            return

        try:
            targets = await self._targets(message, event)
        except RegistryError as exc:
            logger.error(f"Registry unavailable for event {event.id}: {exc}")
            await lease.nack()
            return

        if not targets:
            await lease.ack()
            return

        heartbeat = asyncio.create_task(self._heartbeat(lease))
        semaphore = asyncio.Semaphore(self.fanout)
        # A redelivered message may have reached the endpoint without being recorded
        attempt_number = _attempt_number(message) + message.redelivery_count
        try:
            recorded = await asyncio.gather(
                *(
                    self._deliver_one(semaphore, event, subscription, attempt_number, message.data)
                    for subscription in targets
                )
            )
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        if all(recorded):
            await lease.ack()
        else:
            logger.warning(f"Event {event.id}: not every attempt was recorded, returning message")
            await lease.nack()

    async def _targets(self, message: Message, event: Event) -> list[SubscriptionRecord]:
        """Subscriptions this message still owes an attempt to.

        A target with a recorded attempt for the event is already settled:
        either terminal or owned by its retry chain. Redelivered messages
        must not start a second chain for it.
        """
        attempted = await self.engine.delivery_log.attempted(event.id)
        subscription_id = message.attributes.get("subscription_id")
        if not subscription_id:
            matching = await self.registry.list_matching(event.tenant, event.type)
            pending = [s for s in matching if s.id not in attempted]
            if len(pending) < len(matching):
                logger.info(
                    f"Event {event.id} redelivered; {len(matching) - len(pending)} "
                    "subscription(s) already attempted"
                )
            return pending

        if attempted.get(subscription_id, 0) >= _attempt_number(message):
            logger.info(f"Retry {_attempt_number(message)} of {event.id} for {subscription_id} already recorded")
            return []

        # A retry targets one subscription; read it fresh rather than from cache
        subscription = await self.registry.get(subscription_id)
        reason = None
        if subscription is None:
            reason = "subscription_gone"
        elif not subscription.is_active:
            reason = f"subscription_{subscription.state}"
        elif not subscription.matches(event.type):
            reason = "filter_mismatch"
        if reason is None:
            return [subscription]

        logger.info(f"Skipping retry of {event.id} for {subscription_id}: {reason}")
        await self.engine.skip(event, subscription_id, _attempt_number(message), reason)
        return []

    async def _deliver_one(
        self,
        semaphore: asyncio.Semaphore,
        event: Event,
        subscription: SubscriptionRecord,
        attempt_number: int,
        body: bytes,
    ) -> bool:
        async with semaphore:
            try:
                await self.engine.deliver(event, subscription, attempt_number, body=body)
                return True
            except RegistryError as exc:
                logger.error(f"Could not record delivery of {event.id} to {subscription.id}: {exc}")
                return False
            except Exception:
                logger.exception(f"Delivery of {event.id} to {subscription.id} failed unexpectedly")
            try:
                await self.engine.record_internal_error(event, subscription, attempt_number, body=body)
                return True
            except Exception as exc:
                logger.error(f"Could not record internal error for {event.id} -> {subscription.id}: {exc}")
                return False

    async def _heartbeat(self, lease: Lease) -> None:
        while True:
            await asyncio.sleep(self.lease_extend_interval)
            try:
                await lease.extend(self.lease_duration)
            except BusError as exc:
                logger.warning(f"Could not extend lease of {lease.message.id}: {exc}")
