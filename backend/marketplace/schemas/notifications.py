"""Schemas for the notification inbox."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlmodel import SQLModel

from marketplace.db.pagination import PaginationRead

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class NotificationRead(SQLModel):
    id: UUID
    user_id: UUID
    type: str
    title: str
    body: str
    payload: dict[str, object] | None = None
    is_read: bool
    created_at: datetime
    read_at: datetime | None = None


class NotificationResponse(SQLModel):
    notification: NotificationRead


class NotificationListResponse(SQLModel):
    items: list[NotificationRead]
    unread_count: int
    pagination: PaginationRead


class ReadAllResponse(SQLModel):
    updated_count: int
