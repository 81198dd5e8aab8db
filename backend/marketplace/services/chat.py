"""Task chat between the customer and the selected executor."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlmodel import col

from marketplace.core.errors import ForbiddenError
from marketplace.core.logging import get_logger
from marketplace.core.validation import Result, required_text, unwrap
from marketplace.db.session import atomic
from marketplace.models.assignments import Assignment
from marketplace.models.task_messages import TaskMessage
from marketplace.services.tasks import get_task

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 4000
DEFAULT_CHAT_LIMIT = 100
MAX_CHAT_LIMIT = 200


def validate_message_text(value: object) -> Result[str]:
    return required_text(value, "text", max_length=MAX_MESSAGE_LENGTH)


async def ensure_chat_participant(session: AsyncSession, *, task_id: UUID, actor_id: UUID) -> None:
    """Raise unless the task has an assignment and ``actor_id`` is on it."""
    task = await get_task(session, task_id)
    assignment = await Assignment.objects.filter(col(Assignment.task_id) == task.id).first(
        session,
    )
    if assignment is None:
        raise ForbiddenError("Chat is available only after executor selection.")
    if actor_id not in (task.customer_id, assignment.executor_id):
        raise ForbiddenError("Only task customer and assigned executor can access chat.")


async def list_messages(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    limit: int = DEFAULT_CHAT_LIMIT,
) -> list[TaskMessage]:
    """The most recent ``limit`` messages, oldest first."""
    await ensure_chat_participant(session, task_id=task_id, actor_id=actor_id)
    recent = await (
        TaskMessage.objects.filter(col(TaskMessage.task_id) == task_id)
        .order_by(col(TaskMessage.created_at).desc())
        .limit(limit)
        .all(session)
    )
    recent.reverse()
    return recent


async def post_message(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    text: object,
) -> TaskMessage:
    normalized = unwrap(validate_message_text(text))
    async with atomic(session):
        await ensure_chat_participant(session, task_id=task_id, actor_id=actor_id)
        message = TaskMessage(task_id=task_id, sender_id=actor_id, text=normalized)
        session.add(message)
    logger.info(
        "task.chat.message_posted",
        extra={"task_id": str(task_id), "message_id": str(message.id)},
    )
    return message
