"""In-app notification model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class NotificationType(str, Enum):
    PROPOSAL_CREATED = "PROPOSAL_CREATED"
    EXECUTOR_SELECTED = "EXECUTOR_SELECTED"
    TASK_SENT_TO_REVIEW = "TASK_SENT_TO_REVIEW"
    TASK_APPROVED = "TASK_APPROVED"
    TASK_REJECTED = "TASK_REJECTED"


class Notification(QueryModel, table=True):
    """Recipient-scoped notification created by lifecycle side effects."""

    __tablename__ = "notifications"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    type: str = Field(index=True)
    title: str
    body: str
    payload: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    is_read: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    read_at: datetime | None = None
