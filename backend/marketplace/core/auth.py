"""Bearer-token authentication for marketplace users."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from marketplace.core.config import settings
from marketplace.core.errors import ForbiddenError, InternalError, UnauthorizedError
from marketplace.core.logging import get_logger
from marketplace.db.session import get_session
from marketplace.models.users import User

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
SECURITY_DEP = Depends(security)
SESSION_DEP = Depends(get_session)
JWT_ALGORITHM = "HS256"


class AuthTokenPayload(BaseModel):
    """JWT claims required on marketplace bearer tokens."""

    sub: UUID
    telegram_id: str


@dataclass
class AuthContext:
    """Authenticated, non-blocked user resolved from the bearer token."""

    user: User

    @property
    def user_id(self) -> UUID:
        return self.user.id


def _secret() -> str:
    secret = settings.jwt_secret.strip()
    if not secret:
        raise InternalError("JWT secret is not configured.")
    return secret


def sign_auth_token(
    *,
    user_id: UUID,
    telegram_id: int | str,
    ttl_seconds: int | None = None,
) -> str:
    """Mint an HS256 token for ``user_id``; used by the login flow and tests."""
    now = datetime.now(UTC)
    ttl = settings.auth_token_ttl_seconds if ttl_seconds is None else ttl_seconds
    claims = {
        "sub": str(user_id),
        "telegram_id": str(telegram_id),
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    return jwt.encode(claims, _secret(), algorithm=JWT_ALGORITHM)


def verify_auth_token(token: str) -> AuthTokenPayload:
    secret = _secret()
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise UnauthorizedError("Auth token has expired.") from exc
    except jwt.PyJWTError as exc:
        raise UnauthorizedError("Invalid auth token.") from exc
    try:
        return AuthTokenPayload.model_validate(claims)
    except PydanticValidationError as exc:
        raise UnauthorizedError("Invalid auth token payload.") from exc


async def resolve_actor(session: AsyncSession, token: str | None) -> User:
    """Resolve the acting user for a bearer token.

    Raises ``UnauthorizedError`` for missing or invalid tokens and unknown
    users, and ``ForbiddenError`` for blocked users.
    """
    if not token:
        raise UnauthorizedError("Authorization header must be a Bearer token.")
    payload = verify_auth_token(token)
    user = await User.objects.by_id(payload.sub).first(session)
    if user is None:
        raise UnauthorizedError("User is not found for this token.")
    if user.is_blocked:
        logger.info("auth.blocked_user", extra={"user_id": str(user.id)})
        raise ForbiddenError("User is blocked.")
    return user


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials | None = SECURITY_DEP,
    session: AsyncSession = SESSION_DEP,
) -> AuthContext:
    """FastAPI dependency resolving the authenticated user."""
    token = credentials.credentials.strip() if credentials is not None else None
    user = await resolve_actor(session, token)
    return AuthContext(user=user)
