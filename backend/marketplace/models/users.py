"""User model for marketplace participants."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import Field

from marketplace.core.time import utcnow
from marketplace.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class PrimaryRole(str, Enum):
    """Role a user picked during onboarding."""

    CUSTOMER = "CUSTOMER"
    EXECUTOR = "EXECUTOR"


class User(QueryModel, table=True):
    """Telegram-backed account; provisioned by the login flow, read by the core."""

    __tablename__ = "users"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    telegram_id: int = Field(sa_column=Column(BigInteger, unique=True, nullable=False))
    username: str | None = None
    display_name: str
    primary_role: str | None = None
    role_flags: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    is_blocked: bool = Field(default=False)
    bot_notifications_enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
