"""JWT auth utilities — tenant-scoped bearer tokens for the control plane."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from eventrelay.config import Settings, get_settings

ALGORITHM = "HS256"


@dataclass(frozen=True)
class TenantIdentity:
    tenant: str
    app_id: Optional[str] = None


def create_access_token(
    data: dict, expires_delta: timedelta | None = None, settings: Settings | None = None
) -> str:
    settings = settings or get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str, settings: Settings | None = None) -> dict | None:
    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


def identity_from_claims(claims: dict) -> TenantIdentity | None:
    tenant = claims.get("tenant")
    if not tenant or not isinstance(tenant, str):
        return None
    app_id = claims.get("app_id")
    return TenantIdentity(tenant=tenant, app_id=app_id if isinstance(app_id, str) else None)


def token_for(tenant: str, app_id: str | None = None, settings: Settings | None = None) -> str:
    claims = {"sub": tenant, "tenant": tenant}
    if app_id:
        claims["app_id"] = app_id
    return create_access_token(claims, settings=settings)
