"""Schemas for task chat messages."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlmodel import SQLModel

from marketplace.schemas.users import UserSummary

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class TaskMessageCreate(SQLModel):
    text: str


class TaskMessageRead(SQLModel):
    id: UUID
    task_id: UUID
    sender_id: UUID
    text: str
    created_at: datetime
    sender: UserSummary | None = None


class TaskMessageResponse(SQLModel):
    message: TaskMessageRead


class TaskMessageListResponse(SQLModel):
    items: list[TaskMessageRead]
