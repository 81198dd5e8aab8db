"""Task model and lifecycle status values."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime, Decimal)


class TaskStatus(str, Enum):
    """Lifecycle states; COMPLETED and CANCELED are terminal."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    ON_REVIEW = "ON_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class Task(QueryModel, table=True):
    """Unit of work posted by a customer with a budget and optional deadline."""

    __tablename__ = "tasks"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    customer_id: UUID = Field(foreign_key="users.id", index=True)
    title: str
    description: str
    budget: Decimal = Field(max_digits=12, decimal_places=2, index=True)
    deadline_at: datetime | None = None
    category: str = Field(index=True)
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    status: str = Field(default=TaskStatus.OPEN.value, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
