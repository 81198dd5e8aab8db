"""Public user summaries embedded in other payloads."""

from __future__ import annotations

from uuid import UUID

from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (UUID,)


class UserSummary(SQLModel):
    """Minimal user identity shown next to tasks, proposals, and messages."""

    id: UUID
    username: str | None = None
    display_name: str
