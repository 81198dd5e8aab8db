"""Notification wording per lifecycle event."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from marketplace.models.notifications import NotificationType
from marketplace.services.notifications.queue import NotificationEvent

if TYPE_CHECKING:
    from uuid import UUID

_TEMPLATES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.PROPOSAL_CREATED: (
        "New proposal",
        'Your task "{title}" received a new proposal.',
    ),
    NotificationType.EXECUTOR_SELECTED: (
        "You were selected as executor",
        'The customer selected you as the executor for "{title}".',
    ),
    NotificationType.TASK_SENT_TO_REVIEW: (
        "Task sent to review",
        'The executor sent "{title}" for review.',
    ),
    NotificationType.TASK_APPROVED: (
        "Task approved",
        'The customer approved completion of "{title}".',
    ),
    NotificationType.TASK_REJECTED: (
        "Task returned to work",
        'The customer returned "{title}" to work.',
    ),
}


def build_event(
    notification_type: NotificationType,
    *,
    user_id: UUID,
    task_id: UUID,
    task_title: str,
    payload: dict[str, Any] | None = None,
) -> NotificationEvent:
    title, body = _TEMPLATES[notification_type]
    return NotificationEvent(
        user_id=user_id,
        type=notification_type.value,
        title=title,
        body=body.format(title=task_title),
        task_id=task_id,
        payload=dict(payload or {}),
    )
