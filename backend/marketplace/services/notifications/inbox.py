"""Recipient-facing notification inbox queries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlmodel import col

from marketplace.core.errors import NotFoundError
from marketplace.core.time import utcnow
from marketplace.db.pagination import Page, paginate
from marketplace.db.session import atomic
from marketplace.models.notifications import Notification

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession


@dataclass(frozen=True)
class InboxPage:
    page: Page[Notification]
    unread_count: int


async def list_notifications(
    session: AsyncSession,
    *,
    user_id: UUID,
    page: int,
    limit: int,
) -> InboxPage:
    """Newest-first page of the user's notifications plus their unread count."""
    query = Notification.objects.filter(col(Notification.user_id) == user_id)
    unread_count = await query.filter(col(Notification.is_read).is_(False)).count(session)
    result = await paginate(
        session,
        query.order_by(col(Notification.created_at).desc(), col(Notification.id).desc()),
        page=page,
        limit=limit,
    )
    return InboxPage(page=result, unread_count=unread_count)


async def mark_read(
    session: AsyncSession,
    *,
    user_id: UUID,
    notification_id: UUID,
) -> Notification:
    """Mark one of the user's notifications read; already-read rows are untouched."""
    async with atomic(session):
        notification = await Notification.objects.filter(
            col(Notification.id) == notification_id,
            col(Notification.user_id) == user_id,
        ).first(session)
        if notification is None:
            raise NotFoundError("Notification not found.")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            session.add(notification)
    return notification


async def mark_all_read(session: AsyncSession, *, user_id: UUID) -> int:
    """Mark every unread notification read and return how many changed."""
    async with atomic(session):
        unread = await Notification.objects.filter(
            col(Notification.user_id) == user_id,
            col(Notification.is_read).is_(False),
        ).all(session)
        read_at = utcnow()
        for notification in unread:
            notification.is_read = True
            notification.read_at = read_at
            session.add(notification)
    return len(unread)
