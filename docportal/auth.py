"""Authentication helpers for request-scoped owner context."""

from typing import Any
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from docportal.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_token_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise _unauthorized("Could not validate credentials")
    return payload


async def get_current_user_id(claims: dict[str, Any] = Depends(get_token_claims)) -> UUID:
    """Resolve the owner id from the token subject."""
    user_id_str = claims.get("sub")
    if not user_id_str:
        raise _unauthorized("Token missing subject")
    try:
        return UUID(user_id_str)
    except ValueError as exc:
        raise _unauthorized("Invalid user ID format in token") from exc


async def get_current_tenant_id(claims: dict[str, Any] = Depends(get_token_claims)) -> UUID | None:
    tenant_id = claims.get("tenant_id")
    if not tenant_id:
        return None
    try:
        return UUID(tenant_id)
    except ValueError as exc:
        raise _unauthorized("Invalid tenant ID format in token") from exc
