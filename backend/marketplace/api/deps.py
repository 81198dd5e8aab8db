"""Reusable FastAPI dependencies for the marketplace API.

Routers compose these instead of reaching into ``app.state`` directly:

- the request-scoped DB session and authenticated user,
- the notification dispatcher and rate limiter built by the app factory,
- page/limit query parsing with the shared bounds.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Depends, Query, Request
from sqlmodel import col

from marketplace.core.auth import AuthContext, get_auth_context
from marketplace.core.validation import page_limit, page_number, unwrap
from marketplace.db.session import get_session
from marketplace.models.users import User
from marketplace.schemas.errors import ErrorResponse
from marketplace.schemas.users import UserSummary

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.services.notifications.dispatcher import NotificationDispatcher
    from marketplace.services.rate_limit import RateLimiter, RateLimitPolicy

AUTH_DEP = Depends(get_auth_context)
SESSION_DEP = Depends(get_session)

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse, "description": "Validation or state-precondition failure"},
    401: {"model": ErrorResponse, "description": "Missing or invalid bearer token"},
    403: {"model": ErrorResponse, "description": "Caller is blocked or not allowed"},
    404: {"model": ErrorResponse, "description": "Resource does not exist"},
}
RATE_LIMITED_RESPONSES: dict[int | str, dict[str, object]] = {
    429: {"model": ErrorResponse, "description": "Too many requests; see Retry-After"},
}


@dataclass(frozen=True)
class PageParams:
    page: int
    limit: int


def get_page_params(
    page: int | None = Query(default=None),
    limit: int | None = Query(default=None),
) -> PageParams:
    """Parse ``page``/``limit`` with the list endpoint defaults."""
    return PageParams(
        page=unwrap(page_number(page)),
        limit=unwrap(page_limit(limit, default=DEFAULT_PAGE_LIMIT, maximum=MAX_PAGE_LIMIT)),
    )


PAGE_DEP = Depends(get_page_params)


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


DISPATCHER_DEP = Depends(get_dispatcher)


def rate_limited(scope: str) -> Callable[..., Awaitable[None]]:
    """Dependency factory charging one hit per call to ``scope`` for the caller."""

    async def _enforce(request: Request, auth: AuthContext = AUTH_DEP) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        policies: dict[str, RateLimitPolicy] = request.app.state.rate_limit_policies
        await limiter.hit(policies[scope], str(auth.user_id))

    return _enforce


async def summarize_users(
    session: AsyncSession,
    user_ids: Iterable[UUID],
) -> dict[UUID, UserSummary]:
    """Fetch users by id in one query for embedding in read payloads."""
    ids = set(user_ids)
    if not ids:
        return {}
    users = await User.objects.filter(col(User.id).in_(ids)).all(session)
    return {user.id: UserSummary.model_validate(user, from_attributes=True) for user in users}
