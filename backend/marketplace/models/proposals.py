"""Proposal model: an executor's bid on a task."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime, Decimal)


class Proposal(QueryModel, table=True):
    """Executor bid; at most one per (task, executor)."""

    __tablename__ = "proposals"  # pyright: ignore[reportAssignmentType]
    __table_args__ = (
        UniqueConstraint("task_id", "executor_id", name="uq_proposals_task_executor"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(foreign_key="tasks.id", index=True)
    executor_id: UUID = Field(foreign_key="users.id", index=True)
    price: Decimal = Field(max_digits=12, decimal_places=2)
    comment: str
    eta_days: int
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
