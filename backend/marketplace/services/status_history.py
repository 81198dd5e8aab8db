"""Append-only status history writes."""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace.core.logging import get_audit_logger
from marketplace.models.task_status_history import TaskStatusHistory

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.models.tasks import TaskStatus

audit_logger = get_audit_logger()


async def record_transition(
    session: AsyncSession,
    *,
    task_id: UUID,
    from_status: TaskStatus | None,
    to_status: TaskStatus,
    changed_by: UUID,
    comment: str | None = None,
) -> TaskStatusHistory | None:
    """Add a history row inside the caller's transaction.

    A transition to the same status is not a transition; nothing is written.
    Pass the returned entry to :func:`log_transition` once the transaction commits.
    """
    if from_status is not None and from_status == to_status:
        return None
    entry = TaskStatusHistory(
        task_id=task_id,
        from_status=from_status.value if from_status is not None else None,
        to_status=to_status.value,
        changed_by=changed_by,
        comment=comment,
    )
    session.add(entry)
    await session.flush()
    return entry


def log_transition(entry: TaskStatusHistory | None) -> None:
    """Emit the audit record for a committed history row."""
    if entry is None:
        return
    audit_logger.info(
        "audit.task_status_changed",
        extra={
            "history_id": str(entry.id),
            "task_id": str(entry.task_id),
            "from_status": entry.from_status,
            "to_status": entry.to_status,
            "changed_by": str(entry.changed_by),
            "comment": entry.comment,
        },
    )
