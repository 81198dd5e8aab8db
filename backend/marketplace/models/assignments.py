"""Assignment model binding a task to its selected executor."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Assignment(QueryModel, table=True):
    """Immutable selection record; the unique task_id breaks selection races."""

    __tablename__ = "assignments"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(foreign_key="tasks.id", unique=True)
    customer_id: UUID = Field(foreign_key="users.id", index=True)
    executor_id: UUID = Field(foreign_key="users.id", index=True)
    selected_proposal_id: UUID = Field(foreign_key="proposals.id", unique=True)
    created_at: datetime = Field(default_factory=utcnow)
