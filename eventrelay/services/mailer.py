"""Email worker — sends transactional email queued on the bus.

Request handlers publish an ``EmailMessage`` with ``queue_email`` and return;
the worker pulls the email topic and hands each message to SMTP. A failed
send is nacked so the bus redelivers it; a message that cannot be parsed is
acked and dropped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from eventrelay.services.bus import Lease, Message, MessageBus, PullSubscription

logger = logging.getLogger(__name__)

# (to_email, subject, text_body, html_body=..., from_name=..., from_email=...) -> sent?
Mailer = Callable[..., Awaitable[bool]]


class EmailMessage(BaseModel):
    to: str
    subject: str = Field(min_length=1)
    text_body: str = ""
    html_body: str = ""
    from_name: str = ""
    from_email: str = ""

    @field_validator("to")
    @classmethod
    def _check_to(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("recipient must be an email address")
        return v


async def queue_email(bus: MessageBus, topic: str, message: EmailMessage) -> str:
    """Publish one email for the worker. Raises BusError if the bus refuses it."""
    return await bus.publish(topic, message.model_dump_json().encode("utf-8"))


class EmailWorker:
    def __init__(
        self,
        bus: MessageBus,
        topic: str,
        send_email: Mailer,
        concurrency: int = 1,
        max_redeliveries: int = 10,
        retry_pause: float = 5.0,
    ):
        self.bus = bus
        self.topic = topic
        self.send_email = send_email
        self.concurrency = concurrency
        self.max_redeliveries = max_redeliveries
        self.retry_pause = retry_pause
        self._subscription: Optional[PullSubscription] = None

    def start(self) -> None:
        self._subscription = self.bus.subscribe(self.topic, self.handle, self.concurrency)

    async def stop(self, grace: float = 5.0) -> None:
        if self._subscription is None:
            return
        self._subscription.cancel()
        if not await self._subscription.wait(grace):
            await self._subscription.abort()
        self._subscription = None

    async def handle(self, message: Message, lease: Lease) -> None:
        if message.redelivery_count > self.max_redeliveries:
            logger.error(f"Dead-lettering email {message.id} after {message.redelivery_count} redeliveries")
            await lease.ack()
            return

        try:
            email = EmailMessage.model_validate_json(message.data)
        except ValidationError as exc:
            logger.warning(f"Dropping malformed email message {message.id}: {exc.error_count()} error(s)")
            await lease.ack()
            return

        sent = await self.send_email(
            email.to,
            email.subject,
            email.text_body,
            html_body=email.html_body,
            from_name=email.from_name,
            from_email=email.from_email,
        )
        if sent:
            await lease.ack()
        else:
            logger.warning(f"Email {message.id} to {email.to} not sent, returning it to the bus")
            # Back off before the bus hands it out again
            await asyncio.sleep(self.retry_pause)
            await lease.nack()
