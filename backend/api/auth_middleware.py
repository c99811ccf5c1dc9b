"""
Bearer authentication for the user-facing and cron endpoints.

User routes take an HS256 JWT (signed with SUPABASE_JWT_SECRET) whose
``sub`` is the user id; every integration lookup is scoped to that id.
The cron hook takes the shared CRON_SECRET instead.

SECURITY: Never trust a user_id from client query parameters.
Always use the AuthContext returned by these dependencies.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from fastapi import Header, HTTPException, status
from jose import JWTError, jwt

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    """Caller identity taken from a verified token."""

    user_id: UUID
    email: Optional[str] = None

    @property
    def user_id_str(self) -> str:
        return str(self.user_id)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _not_configured(setting: str) -> HTTPException:
    logger.error("%s not configured", setting)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{setting} is not configured",
    )


def _bearer_token(authorization: Optional[str]) -> str:
    """The ``<token>`` of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        raise _unauthorized("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        raise _unauthorized("Invalid Authorization header format. Expected: Bearer <token>")
    return token.strip()


def _decode_user_token(token: str) -> dict[str, Any]:
    if not settings.SUPABASE_JWT_SECRET:
        raise _not_configured("SUPABASE_JWT_SECRET")
    try:
        # Supabase sets aud to "authenticated"; only the signature and expiry matter here
        return jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError as e:
        logger.warning("JWT verification failed: %s", e)
        raise _unauthorized("Invalid or expired token")


async def get_current_auth(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> AuthContext:
    """
    FastAPI dependency returning the verified caller.

    Usage:
        @router.get("/protected")
        async def protected_route(auth: AuthContext = Depends(get_current_auth)):
            ...
    """
    claims = _decode_user_token(_bearer_token(authorization))
    try:
        user_id = UUID(str(claims["sub"]))
    except (KeyError, ValueError):
        raise _unauthorized("Invalid token: missing or malformed subject")
    return AuthContext(user_id=user_id, email=claims.get("email"))


def require_cron_secret(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> None:
    """Dependency for scheduler-triggered endpoints: ``Bearer <CRON_SECRET>``."""
    if not settings.CRON_SECRET:
        raise _not_configured("CRON_SECRET")
    if not hmac.compare_digest(_bearer_token(authorization), settings.CRON_SECRET):
        raise _unauthorized("Invalid cron secret")
