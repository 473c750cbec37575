"""Subscription management API — tenant-scoped control plane."""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query

from eventrelay.api.deps import get_components, get_identity
from eventrelay.components import Components
from eventrelay.errors import BusError, InvalidSubscription, SubscriptionNotFound
from eventrelay.schemas import (
    AttemptOut,
    AttemptPage,
    PingResult,
    RotateSecretRequest,
    SubscriptionCreate,
    SubscriptionOut,
    SubscriptionUpdate,
    SubscriptionWithSecret,
)
from eventrelay.services.auth import TenantIdentity
from eventrelay.services.subscriptions import SubscriptionRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

T = TypeVar("T")


async def _apply(op: Awaitable[T]) -> T:
    try:
        return await op
    except SubscriptionNotFound:
        raise HTTPException(404, "Subscription not found")
    except InvalidSubscription as exc:
        raise HTTPException(400, str(exc))


async def _get_or_404(components: Components, subscription_id: str, tenant: str) -> SubscriptionRecord:
    record = await components.registry.get(subscription_id, tenant)
    if record is None:
        raise HTTPException(404, "Subscription not found")
    return record


async def _announce(components: Components, action: str, record: SubscriptionRecord) -> None:
    """Emit ``subscription.<action>``; the change itself is already committed."""
    out = SubscriptionOut.from_record(record)
    try:
        await components.producer.emit(
            f"subscription.{action}", record.tenant, out.model_dump(mode="json")
        )
    except BusError as exc:
        logger.error(f"Could not emit subscription.{action} for {record.id}: {exc}")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _with_secret(record: SubscriptionRecord, secret: bytes) -> SubscriptionWithSecret:
    return SubscriptionWithSecret(
        **SubscriptionOut.from_record(record).model_dump(), secret=secret.decode("utf-8")
    )


# ── Endpoints ────────────────────────────────────────────
@router.post("/", response_model=SubscriptionWithSecret, status_code=201)
async def create_subscription(
    data: SubscriptionCreate,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    """Create a subscription. The signing secret is returned only here and on rotation."""
    app_id = data.app_id or identity.app_id
    if not app_id:
        raise HTTPException(400, "app_id is required")
    record, secret = await _apply(
        components.registry.create(
            tenant=identity.tenant,
            app_id=app_id,
            url=data.url,
            event_filter=data.events,
            secret=data.secret.encode("utf-8") if data.secret else None,
            description=data.description,
            verify=data.verify,
        )
    )
    await _announce(components, "created", record)
    return _with_secret(record, secret)


@router.get("/", response_model=list[SubscriptionOut])
async def list_subscriptions(
    app_id: Optional[str] = None,
    state: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    records = await components.registry.list_subscriptions(
        identity.tenant, app_id=app_id, state=state, skip=skip, limit=limit
    )
    return [SubscriptionOut.from_record(r) for r in records]


@router.get("/{subscription_id}", response_model=SubscriptionOut)
async def get_subscription(
    subscription_id: str,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    return SubscriptionOut.from_record(await _get_or_404(components, subscription_id, identity.tenant))


@router.patch("/{subscription_id}", response_model=SubscriptionOut)
async def update_subscription(
    subscription_id: str,
    data: SubscriptionUpdate,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    record = await _get_or_404(components, subscription_id, identity.tenant)
    if data.url is not None:
        record = await _apply(components.registry.update_url(subscription_id, data.url, identity.tenant))
    if data.events is not None:
        record = await _apply(
            components.registry.update_filter(subscription_id, data.events, identity.tenant)
        )
    if data.url is not None or data.events is not None:
        await _announce(components, "updated", record)
    return SubscriptionOut.from_record(record)


@router.post("/{subscription_id}/rotate-secret", response_model=SubscriptionWithSecret)
async def rotate_secret(
    subscription_id: str,
    data: Optional[RotateSecretRequest] = None,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    secret = data.secret.encode("utf-8") if data and data.secret else None
    record, secret = await _apply(
        components.registry.rotate_secret(subscription_id, identity.tenant, secret)
    )
    await _announce(components, "updated", record)
    return _with_secret(record, secret)


@router.post("/{subscription_id}/disable", response_model=SubscriptionOut)
async def disable_subscription(
    subscription_id: str,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    record = await _apply(components.registry.disable(subscription_id, identity.tenant))
    await _announce(components, "updated", record)
    return SubscriptionOut.from_record(record)


@router.post("/{subscription_id}/enable", response_model=SubscriptionOut)
async def enable_subscription(
    subscription_id: str,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    record = await _apply(components.registry.enable(subscription_id, identity.tenant))
    await _announce(components, "updated", record)
    return SubscriptionOut.from_record(record)


@router.delete("/{subscription_id}", status_code=204)
async def delete_subscription(
    subscription_id: str,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    record = await _apply(components.registry.delete(subscription_id, identity.tenant))
    await _announce(components, "deleted", record)


@router.get("/{subscription_id}/attempts", response_model=list[AttemptOut])
async def list_recent_attempts(
    subscription_id: str,
    limit: int = Query(20, ge=1, le=200),
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    """Latest delivery attempts for a subscription."""
    await _get_or_404(components, subscription_id, identity.tenant)
    return await components.delivery_log.recent(subscription_id, limit)


@router.get("/{subscription_id}/deliveries", response_model=AttemptPage)
async def list_deliveries(
    subscription_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    """Delivery log for a time range; follow ``next_cursor`` for more."""
    await _get_or_404(components, subscription_id, identity.tenant)
    try:
        rows, next_cursor = await components.delivery_log.for_subscription(
            subscription_id, since=_as_utc(since), until=_as_utc(until), limit=limit, cursor=cursor
        )
    except ValueError:
        raise HTTPException(400, "Invalid cursor")
    return AttemptPage(items=[AttemptOut.model_validate(r) for r in rows], next_cursor=next_cursor)


@router.post("/{subscription_id}/ping", response_model=PingResult)
async def ping_subscription(
    subscription_id: str,
    identity: TenantIdentity = Depends(get_identity),
    components: Components = Depends(get_components),
):
    """Send a ``webhook.ping`` right now and report the attempt."""
    record = await _get_or_404(components, subscription_id, identity.tenant)
    result = await components.delivery.ping(record)
    refreshed = await components.registry.get(subscription_id, identity.tenant)
    return PingResult(
        subscription_id=result.subscription_id,
        event_id=result.event_id,
        attempt_number=result.attempt_number,
        outcome=result.outcome.value,
        reason=result.reason,
        response_status=result.response_status,
        state=(refreshed or record).state,
    )
