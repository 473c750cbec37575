"""Webhook subscription model."""

from sqlalchemy import Column, Integer, String, Text

from eventrelay.database import Base
from eventrelay.models import UTCDateTime, new_uuid, utcnow


class Subscription(Base):
    """Tenant-owned webhook endpoint plus the event types it wants."""

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant = Column(String(64), nullable=True, index=True)
    app_id = Column(String(64), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret_ciphertext = Column(Text, nullable=False)  # Fernet token, never plaintext
    event_filter = Column(Text, default='["*"]')  # JSON list of event types or ["*"]
    description = Column(String(500), default="")
    state = Column(String(32), default="active", index=True)
    disabled_reason = Column(String(64), nullable=True)
    # Failure tracking
    consecutive_failures = Column(Integer, default=0)
    last_delivery_at = Column(UTCDateTime, nullable=True)
    last_success_at = Column(UTCDateTime, nullable=True)
    last_failure_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(UTCDateTime, nullable=True)  # tombstone
