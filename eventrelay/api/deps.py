"""Shared FastAPI dependencies — components and the caller's tenant."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from eventrelay.components import Components
from eventrelay.services.auth import TenantIdentity, decode_token, identity_from_claims

security = HTTPBearer()


def get_components(request: Request) -> Components:
    return request.app.state.components


async def get_identity(
    creds: HTTPAuthorizationCredentials = Depends(security),
    components: Components = Depends(get_components),
) -> TenantIdentity:
    """Decode the bearer JWT and return the tenant it is scoped to."""
    payload = decode_token(creds.credentials, components.settings)
    if payload is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or expired token")
    identity = identity_from_claims(payload)
    if identity is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token payload")
    return identity
