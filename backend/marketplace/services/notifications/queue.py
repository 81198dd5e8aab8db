"""Envelope types for the post-commit notification queue."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

PERSIST_TASK_TYPE = "notification.persist"
DELIVER_TASK_TYPE = "notification.deliver"


@dataclass(frozen=True)
class QueuedTask:
    """Generic queued task envelope."""

    task_type: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0

    def with_attempt(self) -> QueuedTask:
        return replace(self, attempts=self.attempts + 1)


@dataclass(frozen=True)
class NotificationEvent:
    """One notification addressed to one user about one task."""

    user_id: UUID
    type: str  # NotificationType value
    title: str
    body: str
    task_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)


def _encode_event(event: NotificationEvent) -> dict[str, Any]:
    return {
        "user_id": str(event.user_id),
        "type": event.type,
        "title": event.title,
        "body": event.body,
        "task_id": str(event.task_id),
        "payload": event.payload,
    }


def persist_task(event: NotificationEvent, *, deliver: bool = True) -> QueuedTask:
    """Envelope that stores the in-app row, then schedules bot delivery."""
    return QueuedTask(
        task_type=PERSIST_TASK_TYPE,
        payload={**_encode_event(event), "deliver": deliver},
    )


def deliver_task(event: NotificationEvent) -> QueuedTask:
    """Envelope that pushes an already-stored notification to the bot."""
    return QueuedTask(task_type=DELIVER_TASK_TYPE, payload=_encode_event(event))


def decode_notification_task(task: QueuedTask) -> NotificationEvent:
    if task.task_type not in (PERSIST_TASK_TYPE, DELIVER_TASK_TYPE):
        msg = f"Unexpected task_type={task.task_type!r} for notification envelope"
        raise ValueError(msg)
    p: dict[str, Any] = task.payload
    return NotificationEvent(
        user_id=UUID(p["user_id"]),
        type=str(p["type"]),
        title=str(p["title"]),
        body=str(p["body"]),
        task_id=UUID(p["task_id"]),
        payload=dict(p.get("payload") or {}),
    )
