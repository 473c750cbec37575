"""Pydantic schemas for API request/response."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ── Subscription ─────────────────────────────────────────
class SubscriptionCreate(BaseModel):
    app_id: Optional[str] = None
    url: str
    events: list[str] = Field(default_factory=lambda: ["*"])
    secret: Optional[str] = Field(None, min_length=16)
    description: str = ""
    verify: bool = False


class SubscriptionUpdate(BaseModel):
    url: Optional[str] = None
    events: Optional[list[str]] = None


class SubscriptionOut(BaseModel):
    id: str
    tenant: Optional[str]
    app_id: str
    url: str
    events: list[str]
    state: str
    disabled_reason: Optional[str] = None
    description: str = ""
    consecutive_failures: int = 0
    last_delivery_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record):
        return cls(
            id=record.id,
            tenant=record.tenant,
            app_id=record.app_id,
            url=record.url,
            events=list(record.event_filter),
            state=record.state,
            disabled_reason=record.disabled_reason,
            description=record.description,
            consecutive_failures=record.consecutive_failures,
            last_delivery_at=record.last_delivery_at,
            last_success_at=record.last_success_at,
            last_failure_at=record.last_failure_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SubscriptionWithSecret(SubscriptionOut):
    """Returned once, on create and on rotation."""

    secret: str


class RotateSecretRequest(BaseModel):
    secret: Optional[str] = Field(None, min_length=16)


# ── Delivery log ─────────────────────────────────────────
class AttemptOut(BaseModel):
    id: str
    subscription_id: str
    event_id: str
    event_type: str
    attempt_number: int
    outcome: str
    response_status: Optional[int] = None
    response_body_excerpt: Optional[str] = None
    error_reason: Optional[str] = None
    duration_ms: int = 0
    started_at: datetime
    finished_at: datetime

    model_config = {"from_attributes": True}


class AttemptPage(BaseModel):
    items: list[AttemptOut]
    next_cursor: Optional[str] = None


class PingResult(BaseModel):
    subscription_id: str
    event_id: str
    attempt_number: int
    outcome: str
    reason: Optional[str] = None
    response_status: Optional[int] = None
    state: str
