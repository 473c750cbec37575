"""Operator alerts — consumes the alerts topic and notifies a human."""

import logging
from typing import Awaitable, Callable, Optional

from eventrelay.errors import DecodeError
from eventrelay.services.bus import Lease, Message, MessageBus, PullSubscription
from eventrelay.services.codec import Event, decode
from eventrelay.services.event_types import AUTO_DISABLED

logger = logging.getLogger(__name__)

# (to_email, subject, text_body) -> sent?
EmailSender = Callable[[str, str, str], Awaitable[bool]]


def render_auto_disabled(event: Event) -> tuple[str, str]:
    payload = event.payload
    subject = f"Webhook disabled: {payload.get('url', '')}"
    body = (
        f"Webhook subscription {payload.get('subscription_id')} "
        f"(app {payload.get('app_id')}, tenant {event.tenant}) was disabled automatically.\n\n"
        f"Endpoint: {payload.get('url')}\n"
        f"Reason: {payload.get('reason')}\n"
        f"Consecutive failures: {payload.get('consecutive_failures')}\n"
        f"Event: {event.id} at {event.created_at.isoformat()}\n\n"
        "Fix the endpoint, then re-enable the subscription.\n"
    )
    return subject, body


class AlertNotifier:
    def __init__(
        self,
        bus: MessageBus,
        topic: str,
        email_to: str = "",
        send_email: Optional[EmailSender] = None,
    ):
        self.bus = bus
        self.topic = topic
        self.email_to = email_to
        self.send_email = send_email
        self._subscription: Optional[PullSubscription] = None

    def start(self) -> None:
        self._subscription = self.bus.subscribe(self.topic, self.handle, concurrency=1)

    async def stop(self, grace: float = 5.0) -> None:
        if self._subscription is None:
            return
        self._subscription.cancel()
        if not await self._subscription.wait(grace):
            await self._subscription.abort()
        self._subscription = None

    async def handle(self, message: Message, lease: Lease) -> None:
        try:
            event = decode(message.data)
        except DecodeError as exc:
            logger.warning(f"Dropping undecodable alert {message.id}: {exc}")
            await lease.ack()
            return

        if event.type == AUTO_DISABLED:
            await self.notify(event)
        else:
            logger.info(f"Ignoring alert of type {event.type}")
        await lease.ack()

    async def notify(self, event: Event) -> bool:
        subject, body = render_auto_disabled(event)
        logger.warning(f"ALERT {subject} ({event.payload.get('reason')})")
        if not self.email_to or self.send_email is None:
            return False
        return await self.send_email(self.email_to, subject, body)
