"""Task chat message model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class TaskMessage(QueryModel, table=True):
    """Append-only chat message between task customer and assigned executor."""

    __tablename__ = "task_messages"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(foreign_key="tasks.id", index=True)
    sender_id: UUID = Field(foreign_key="users.id", index=True)
    text: str
    created_at: datetime = Field(default_factory=utcnow, index=True)
