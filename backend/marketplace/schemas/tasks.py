"""Schemas for task create, update, transition, and read payloads."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

from marketplace.db.pagination import PaginationRead
from marketplace.schemas.users import UserSummary

RUNTIME_ANNOTATION_TYPES = (datetime, Decimal, UUID)


class TaskCreate(SQLModel):
    """Payload for posting a new task."""

    title: str = Field(examples=["Landing page copy"])
    description: str = Field(examples=["Three sections, friendly tone."])
    budget: Decimal = Field(examples=[1500])
    deadline_at: datetime | None = None
    category: str = Field(examples=["copywriting"])
    tags: list[str] = Field(default_factory=list, examples=[["marketing", "web"]])


class TaskUpdate(SQLModel):
    """Partial owner edit; only fields present in the request are applied."""

    title: str | None = None
    description: str | None = None
    budget: Decimal | None = None
    deadline_at: datetime | None = None
    category: str | None = None
    tags: list[str] | None = None


class SelectProposalPayload(SQLModel):
    proposal_id: UUID


class RejectReviewPayload(SQLModel):
    comment: str = Field(description="Why the work goes back to the executor.")


class AssignmentSummary(SQLModel):
    id: UUID
    customer_id: UUID
    executor_id: UUID


class TaskRead(SQLModel):
    """Task payload returned by read and transition endpoints."""

    id: UUID
    customer_id: UUID
    title: str
    description: str
    budget: float
    deadline_at: datetime | None = None
    category: str
    tags: list[str]
    status: str
    created_at: datetime
    updated_at: datetime
    customer: UserSummary | None = None
    assignment: AssignmentSummary | None = None


class TaskResponse(SQLModel):
    task: TaskRead


class TaskListResponse(SQLModel):
    items: list[TaskRead]
    pagination: PaginationRead


class StatusHistoryRead(SQLModel):
    id: UUID
    task_id: UUID
    from_status: str | None = None
    to_status: str
    changed_by: UUID
    comment: str | None = None
    created_at: datetime
    changed_by_user: UserSummary | None = None


class StatusHistoryListResponse(SQLModel):
    items: list[StatusHistoryRead]
