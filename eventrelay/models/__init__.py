"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class SubscriptionState(str, Enum):
    ACTIVE = "active"
    DISABLED_BY_OWNER = "disabled_by_owner"
    DISABLED_BY_SYSTEM = "disabled_by_system"
    PENDING_VERIFICATION = "pending_verification"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    SKIPPED = "skipped"


from eventrelay.models.subscription import Subscription  # noqa: E402
from eventrelay.models.delivery import DeliveryAttempt, RetryQueueEntry  # noqa: E402

__all__ = [
    "AttemptOutcome",
    "DeliveryAttempt",
    "RetryQueueEntry",
    "Subscription",
    "SubscriptionState",
    "UTCDateTime",
    "new_uuid",
    "utcnow",
]
