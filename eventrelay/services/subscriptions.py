"""Subscription registry — tenant-scoped store of webhook endpoints.

Writes are strongly consistent. ``list_matching`` serves from a per-tenant
read cache for up to ``cache_ttl`` seconds; writes made through this
registry invalidate it, other processes see them once the entry expires.
Secrets stay encrypted in every record and cache entry and are decrypted
only by :meth:`SubscriptionRegistry.reveal_secret` at signing time.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional, TypeVar
from urllib.parse import urlsplit

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.errors import InvalidSubscription, RegistryError, SubscriptionNotFound
from eventrelay.models import Subscription, SubscriptionState, utcnow
from eventrelay.services.event_types import filter_matches, normalize_filter
from eventrelay.services.secretbox import MIN_SECRET_BYTES, SecretBox, generate_secret

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    tenant: Optional[str]
    app_id: str
    url: str
    event_filter: tuple[str, ...]
    state: str
    consecutive_failures: int
    description: str = ""
    disabled_reason: Optional[str] = None
    last_delivery_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    secret_ciphertext: str = field(default="", repr=False)

    @property
    def is_active(self) -> bool:
        return self.state == SubscriptionState.ACTIVE.value and self.deleted_at is None

    def matches(self, event_type: str) -> bool:
        return filter_matches(self.event_filter, event_type)

    @classmethod
    def from_model(cls, row: Subscription) -> "SubscriptionRecord":
        try:
            event_filter = tuple(json.loads(row.event_filter or "[]"))
        except (json.JSONDecodeError, TypeError):
            event_filter = ()
        return cls(
            id=row.id,
            tenant=row.tenant,
            app_id=row.app_id,
            url=row.url,
            event_filter=event_filter,
            state=row.state,
            consecutive_failures=row.consecutive_failures or 0,
            description=row.description or "",
            disabled_reason=row.disabled_reason,
            last_delivery_at=row.last_delivery_at,
            last_success_at=row.last_success_at,
            last_failure_at=row.last_failure_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
            deleted_at=row.deleted_at,
            secret_ciphertext=row.secret_ciphertext,
        )


class SubscriptionRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        secret_box: SecretBox,
        allow_http: bool = False,
        cache_ttl: float = 10.0,
        db_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.secret_box = secret_box
        self.allow_http = allow_http
        self.cache_ttl = cache_ttl
        self.db_timeout = db_timeout
        self.clock = clock
        self._cache: dict[Optional[str], tuple[float, list[SubscriptionRecord]]] = {}

    # ── helpers ──────────────────────────────────────────

    async def _guard(self, op: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(op, self.db_timeout)
        except SQLAlchemyError as exc:
            raise RegistryError(f"Subscription store error: {exc.__class__.__name__}") from exc
        except asyncio.TimeoutError as exc:
            raise RegistryError("Subscription store timed out") from exc

    def invalidate(self, tenant: Optional[str] = None) -> None:
        # Platform-wide events read the tenant=None entry, which spans all tenants
        self._cache.pop(tenant, None)
        self._cache.pop(None, None)

    def validate_url(self, url: str) -> str:
        url = (url or "").strip()
        parts = urlsplit(url)
        allowed = ("https", "http") if self.allow_http else ("https",)
        if parts.scheme not in allowed:
            raise InvalidSubscription(f"URL scheme must be one of: {', '.join(allowed)}")
        if not parts.hostname:
            raise InvalidSubscription("URL must be absolute")
        return url

    @staticmethod
    def _validate_filter(event_filter: Iterable[str]) -> list[str]:
        try:
            return normalize_filter(event_filter)
        except ValueError as exc:
            raise InvalidSubscription(str(exc)) from exc

    @staticmethod
    def _validate_secret(secret: Optional[bytes]) -> bytes:
        if secret is None:
            return generate_secret()
        if len(secret) < MIN_SECRET_BYTES:
            raise InvalidSubscription(f"Secret must be at least {MIN_SECRET_BYTES} bytes")
        return secret

    @staticmethod
    async def _fetch(
        session: AsyncSession,
        subscription_id: str,
        tenant: Optional[str],
        include_deleted: bool = False,
    ) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
        if tenant is not None:
            stmt = stmt.where(Subscription.tenant == tenant)
        if not include_deleted:
            stmt = stmt.where(Subscription.deleted_at.is_(None))
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _mutate(
        self,
        subscription_id: str,
        tenant: Optional[str],
        apply: Callable[[Subscription], None],
    ) -> SubscriptionRecord:
        async def op():
            async with self.session_factory() as session:
                row = await self._fetch(session, subscription_id, tenant)
                if row is None:
                    raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
                apply(row)
                row.updated_at = self.clock()
                await session.commit()
                return SubscriptionRecord.from_model(row)

        record = await self._guard(op())
        self.invalidate(record.tenant)
        return record

    def reveal_secret(self, record: SubscriptionRecord) -> bytes:
        return self.secret_box.decrypt(record.secret_ciphertext)

    # ── reads ────────────────────────────────────────────

    async def list_matching(self, tenant: Optional[str], event_type: str) -> list[SubscriptionRecord]:
        """Active subscriptions whose filter names ``event_type`` or is ``*``.

        A platform-wide event (``tenant is None``) matches active subscriptions
        of every tenant.
        """
        records = self._cached(tenant)
        if records is None:
            records = await self._guard(self._load_active(tenant))
            if self.cache_ttl > 0:
                self._cache[tenant] = (time.monotonic() + self.cache_ttl, records)
        return [r for r in records if r.is_active and r.matches(event_type)]

    def _cached(self, tenant: Optional[str]) -> Optional[list[SubscriptionRecord]]:
        entry = self._cache.get(tenant)
        if entry is None:
            return None
        expires_at, records = entry
        if expires_at <= time.monotonic():
            self._cache.pop(tenant, None)
            return None
        return records

    async def _load_active(self, tenant: Optional[str]) -> list[SubscriptionRecord]:
        stmt = select(Subscription).where(
            Subscription.state == SubscriptionState.ACTIVE.value,
            Subscription.deleted_at.is_(None),
        )
        if tenant is not None:
            stmt = stmt.where(Subscription.tenant == tenant)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [SubscriptionRecord.from_model(row) for row in result.scalars().all()]

    async def get(
        self,
        subscription_id: str,
        tenant: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[SubscriptionRecord]:
        """Fetch one subscription; None when it does not exist (or is deleted)."""

        async def op():
            async with self.session_factory() as session:
                row = await self._fetch(session, subscription_id, tenant, include_deleted)
                return SubscriptionRecord.from_model(row) if row else None

        return await self._guard(op())

    async def list_subscriptions(
        self,
        tenant: Optional[str],
        app_id: Optional[str] = None,
        state: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[SubscriptionRecord]:
        stmt = select(Subscription).where(Subscription.deleted_at.is_(None))
        if tenant is not None:
            stmt = stmt.where(Subscription.tenant == tenant)
        if app_id is not None:
            stmt = stmt.where(Subscription.app_id == app_id)
        if state is not None:
            stmt = stmt.where(Subscription.state == state)
        stmt = stmt.order_by(Subscription.created_at.desc()).offset(skip).limit(limit)

        async def op():
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [SubscriptionRecord.from_model(row) for row in result.scalars().all()]

        return await self._guard(op())

    # ── writes ───────────────────────────────────────────

    async def create(
        self,
        tenant: Optional[str],
        app_id: str,
        url: str,
        event_filter: Iterable[str] = ("*",),
        secret: Optional[bytes] = None,
        description: str = "",
        verify: bool = False,
    ) -> tuple[SubscriptionRecord, bytes]:
        """Create a subscription. Returns the record and the plaintext secret.

        With ``verify`` the subscription starts in ``pending_verification``
        and becomes active after its first successful ping.
        """
        url = self.validate_url(url)
        events = self._validate_filter(event_filter)
        secret = self._validate_secret(secret)
        now = self.clock()
        row = Subscription(
            tenant=tenant,
            app_id=app_id,
            url=url,
            secret_ciphertext=self.secret_box.encrypt(secret),
            event_filter=json.dumps(events),
            description=description,
            state=(
                SubscriptionState.PENDING_VERIFICATION.value if verify else SubscriptionState.ACTIVE.value
            ),
            created_at=now,
            updated_at=now,
        )

        async def op():
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
                return SubscriptionRecord.from_model(row)

        record = await self._guard(op())
        self.invalidate(tenant)
        logger.info(f"Subscription {record.id} created for tenant={tenant} app={app_id}")
        return record, secret

    async def update_url(self, subscription_id: str, url: str, tenant: Optional[str] = None) -> SubscriptionRecord:
        url = self.validate_url(url)

        def apply(row: Subscription) -> None:
            row.url = url

        return await self._mutate(subscription_id, tenant, apply)

    async def update_filter(
        self, subscription_id: str, event_filter: Iterable[str], tenant: Optional[str] = None
    ) -> SubscriptionRecord:
        events = self._validate_filter(event_filter)

        def apply(row: Subscription) -> None:
            row.event_filter = json.dumps(events)

        return await self._mutate(subscription_id, tenant, apply)

    async def rotate_secret(
        self,
        subscription_id: str,
        tenant: Optional[str] = None,
        secret: Optional[bytes] = None,
    ) -> tuple[SubscriptionRecord, bytes]:
        """Replace the secret and reset the failure counter in one write."""
        secret = self._validate_secret(secret)
        ciphertext = self.secret_box.encrypt(secret)

        def apply(row: Subscription) -> None:
            row.secret_ciphertext = ciphertext
            row.consecutive_failures = 0

        record = await self._mutate(subscription_id, tenant, apply)
        logger.info(f"Subscription {subscription_id} secret rotated")
        return record, secret

    async def disable(self, subscription_id: str, tenant: Optional[str] = None) -> SubscriptionRecord:
        def apply(row: Subscription) -> None:
            row.state = SubscriptionState.DISABLED_BY_OWNER.value
            row.disabled_reason = "owner"

        return await self._mutate(subscription_id, tenant, apply)

    async def enable(self, subscription_id: str, tenant: Optional[str] = None) -> SubscriptionRecord:
        """Manual (re-)enable; the only way out of ``disabled_by_system``."""

        def apply(row: Subscription) -> None:
            self.validate_url(row.url)
            row.state = SubscriptionState.ACTIVE.value
            row.disabled_reason = None
            row.consecutive_failures = 0

        return await self._mutate(subscription_id, tenant, apply)

    async def delete(self, subscription_id: str, tenant: Optional[str] = None) -> SubscriptionRecord:
        """Tombstone the subscription so in-flight attempts see it as gone."""

        def apply(row: Subscription) -> None:
            row.deleted_at = self.clock()

        record = await self._mutate(subscription_id, tenant, apply)
        logger.info(f"Subscription {subscription_id} deleted")
        return record

    # ── delivery-side writes (caller owns the transaction) ──

    async def record_delivery(
        self,
        session: AsyncSession,
        subscription_id: str,
        at: datetime,
        success: Optional[bool],
        count_failure: bool = False,
    ) -> Optional[int]:
        """Stamp delivery timestamps and adjust the failure counter.

        ``success`` None leaves the success/failure stamps alone. Returns the
        counter after the update, or None if the subscription row is gone.
        """
        values: dict = {"last_delivery_at": at}
        if success:
            values["last_success_at"] = at
            values["consecutive_failures"] = 0
        elif success is not None:
            values["last_failure_at"] = at
            if count_failure:
                values["consecutive_failures"] = Subscription.consecutive_failures + 1
        await session.execute(
            update(Subscription).where(Subscription.id == subscription_id).values(**values)
        )
        result = await session.execute(
            select(Subscription.consecutive_failures).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def transition_state(
        self,
        session: AsyncSession,
        subscription_id: str,
        to_state: SubscriptionState,
        reason: Optional[str],
        from_states: Iterable[SubscriptionState] = (SubscriptionState.ACTIVE,),
    ) -> bool:
        """Conditional state change. True only for the caller that changed it."""
        result = await session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.deleted_at.is_(None),
                Subscription.state.in_([s.value for s in from_states]),
            )
            .values(state=to_state.value, disabled_reason=reason, updated_at=self.clock())
        )
        return result.rowcount == 1

    async def activate_verified(self, subscription_id: str) -> bool:
        """Promote a ``pending_verification`` subscription after a good ping."""

        async def op():
            async with self.session_factory() as session:
                changed = await self.transition_state(
                    session,
                    subscription_id,
                    SubscriptionState.ACTIVE,
                    reason=None,
                    from_states=(SubscriptionState.PENDING_VERIFICATION,),
                )
                await session.commit()
                return changed

        changed = await self._guard(op())
        if changed:
            # tenant unknown here; drop every cached tenant list
            self._cache.clear()
        return changed
