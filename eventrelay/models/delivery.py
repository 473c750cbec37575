"""Delivery log and retry queue models."""

from sqlalchemy import Column, Index, Integer, LargeBinary, String, Text, UniqueConstraint

from eventrelay.database import Base
from eventrelay.models import UTCDateTime, new_uuid, utcnow


class DeliveryAttempt(Base):
    """One delivery of one event to one subscription. Append-only."""

    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "event_id", "attempt_number", name="uq_delivery_attempt"
        ),
        Index("ix_delivery_attempts_subscription_started", "subscription_id", "started_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    subscription_id = Column(String(36), nullable=False)
    event_id = Column(String(40), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)
    outcome = Column(String(32), nullable=False)  # success|transient_failure|permanent_failure|skipped
    response_status = Column(Integer, nullable=True)
    response_body_excerpt = Column(Text, default="")
    error_reason = Column(String(64), nullable=True)
    duration_ms = Column(Integer, default=0)
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    finished_at = Column(UTCDateTime, nullable=False, default=utcnow)


class RetryQueueEntry(Base):
    """Deferred attempt waiting for its not-before time."""

    __tablename__ = "retry_queue"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "event_id", "attempt_number", name="uq_retry_queue_attempt"
        ),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    subscription_id = Column(String(36), nullable=False)
    event_id = Column(String(40), nullable=False)
    attempt_number = Column(Integer, nullable=False)
    not_before_at = Column(UTCDateTime, nullable=False, index=True)
    event_bytes = Column(LargeBinary, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)
