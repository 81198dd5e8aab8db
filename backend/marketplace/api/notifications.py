"""Notification inbox endpoints for the authenticated user."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter

from marketplace.api.deps import AUTH_DEP, ERROR_RESPONSES, PAGE_DEP, SESSION_DEP, PageParams
from marketplace.core.auth import AuthContext
from marketplace.schemas.notifications import (
    NotificationListResponse,
    NotificationRead,
    NotificationResponse,
    ReadAllResponse,
)
from marketplace.services.notifications import inbox

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    responses=ERROR_RESPONSES,
)


@router.get("", response_model=NotificationListResponse)
async def list_notifications_endpoint(
    paging: PageParams = PAGE_DEP,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> NotificationListResponse:
    """Newest notifications first, with the caller's unread count."""
    result = await inbox.list_notifications(
        session,
        user_id=auth.user_id,
        page=paging.page,
        limit=paging.limit,
    )
    return NotificationListResponse(
        items=[
            NotificationRead.model_validate(item, from_attributes=True)
            for item in result.page.items
        ],
        unread_count=result.unread_count,
        pagination=result.page.pagination(),
    )


@router.post("/read-all", response_model=ReadAllResponse)
async def read_all_notifications_endpoint(
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> ReadAllResponse:
    updated = await inbox.mark_all_read(session, user_id=auth.user_id)
    return ReadAllResponse(updated_count=updated)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def read_notification_endpoint(
    notification_id: UUID,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> NotificationResponse:
    notification = await inbox.mark_read(
        session,
        user_id=auth.user_id,
        notification_id=notification_id,
    )
    return NotificationResponse(
        notification=NotificationRead.model_validate(notification, from_attributes=True),
    )
