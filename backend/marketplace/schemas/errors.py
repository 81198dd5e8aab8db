"""Structured error payload schemas used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel

from marketplace.core.errors import ErrorCode


class ErrorBody(SQLModel):
    code: ErrorCode = Field(
        description="Stable machine-readable error code.",
        examples=["VALIDATION_ERROR"],
    )
    message: str = Field(
        description="Human-readable explanation of the failure.",
        examples=["Only OPEN tasks can be edited."],
    )
    details: dict[str, object] = Field(
        default_factory=dict,
        description="Error context. Always includes `request_id`.",
        examples=[{"request_id": "req-123", "field": "title"}],
    )


class ErrorResponse(SQLModel):
    """Envelope returned for every non-2xx response."""

    error: ErrorBody
