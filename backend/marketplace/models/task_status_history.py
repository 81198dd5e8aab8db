"""Append-only task status transition log."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskStatusHistory(QueryModel, table=True):
    """One row per status transition; from_status is null for task creation."""

    __tablename__ = "task_status_history"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(foreign_key="tasks.id", index=True)
    from_status: str | None = None
    to_status: str
    changed_by: UUID = Field(foreign_key="users.id", index=True)
    comment: str | None = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
