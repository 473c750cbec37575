"""Event producer — validates, envelopes and publishes domain events."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from eventrelay.errors import BusError
from eventrelay.models import utcnow
from eventrelay.services.bus import MessageBus
from eventrelay.services.codec import Event, encode, new_event
from eventrelay.services.event_types import INTERNAL_EVENT_TYPES, is_known

logger = logging.getLogger(__name__)


class EventProducer:
    def __init__(
        self,
        bus: MessageBus,
        topic: str,
        publish_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.bus = bus
        self.topic = topic
        self.publish_timeout = publish_timeout
        self.clock = clock

    async def emit(self, event_type: str, tenant: Optional[str], payload: Optional[dict] = None) -> Event:
        """Publish one event on the primary topic.

        Returns once the bus has accepted it. Raises ValueError for an
        unregistered type or a payload that cannot be canonicalized, and
        BusError when the bus refuses or times out; the caller may retry.
        """
        if not is_known(event_type) or event_type in INTERNAL_EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        event = new_event(event_type, tenant, payload, now=self.clock())
        data = encode(event)
        try:
            await asyncio.wait_for(
                self.bus.publish(self.topic, data, attributes={"event_type": event_type}),
                self.publish_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise BusError(f"Publishing {event.id} timed out") from exc
        logger.debug(f"Emitted {event_type} {event.id} tenant={tenant}")
        return event
