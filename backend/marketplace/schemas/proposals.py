"""Schemas for proposal API payloads."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

from marketplace.db.pagination import PaginationRead
from marketplace.schemas.users import UserSummary

RUNTIME_ANNOTATION_TYPES = (datetime, Decimal, UUID)


class ProposalCreate(SQLModel):
    """Payload for bidding on an OPEN task."""

    price: Decimal = Field(examples=[1200])
    comment: str = Field(examples=["Can deliver a first draft in two days."])
    eta_days: int = Field(examples=[3])


class ProposalUpdate(SQLModel):
    price: Decimal | None = None
    comment: str | None = None
    eta_days: int | None = None


class ProposalRead(SQLModel):
    """Proposal payload returned by read endpoints."""

    id: UUID
    task_id: UUID
    executor_id: UUID
    price: float
    comment: str
    eta_days: int
    created_at: datetime
    updated_at: datetime
    executor: UserSummary | None = None


class ProposalResponse(SQLModel):
    proposal: ProposalRead


class ProposalListResponse(SQLModel):
    items: list[ProposalRead]


class ProposalTaskSummary(SQLModel):
    """Task fields shown alongside an executor's own proposal."""

    id: UUID
    title: str
    status: str
    deadline_at: datetime | None = None
    category: str
    customer: UserSummary | None = None


class MyProposalRead(ProposalRead):
    task: ProposalTaskSummary | None = None


class MyProposalListResponse(SQLModel):
    items: list[MyProposalRead]
    pagination: PaginationRead
