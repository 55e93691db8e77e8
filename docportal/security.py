"""JWT helpers for bearer tokens."""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import jwt

from docportal.config import settings
from docportal.logger import get_logger

logger = get_logger(__name__)


def create_access_token(
    owner_id: UUID,
    *,
    tenant_id: UUID | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a token whose subject is the owner id.

    Token issuance belongs to the identity provider in production; this is used by local
    tooling and tests.
    """
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    claims: dict[str, Any] = {"sub": str(owner_id), "exp": expire}
    if tenant_id is not None:
        claims["tenant_id"] = str(tenant_id)
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT access token."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        logger.debug("JWT token expired")
        return None
    except jwt.PyJWTError as exc:
        logger.warning(
            "JWT decode failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return None
