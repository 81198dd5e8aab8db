"""Task lifecycle: creation, owner edits, transitions, and feed queries.

Every transition runs in one transaction: the task row is re-read (locked
where the dialect supports it), checked against the fresh state, mutated,
and its history row and in-app notification are written before commit.
Bot pushes are published to the notification dispatcher only after commit.

Checks run in a fixed order: missing task (404), wrong actor (403), then
wrong state or missing assignment (400). Sending to review checks state
before the actor.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal, cast, get_args

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import col

from marketplace.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from marketplace.core.logging import get_logger
from marketplace.core.time import utcnow
from marketplace.core.validation import (
    Invalid,
    Result,
    Valid,
    collect,
    optional_deadline,
    optional_text,
    positive_decimal,
    required_text,
    tag_list,
    unwrap,
)
from marketplace.db.pagination import Page, paginate
from marketplace.db.session import atomic
from marketplace.models.assignments import Assignment
from marketplace.models.notifications import Notification, NotificationType
from marketplace.models.proposals import Proposal
from marketplace.models.task_status_history import TaskStatusHistory
from marketplace.models.tasks import Task, TaskStatus
from marketplace.services.notifications.templates import build_event
from marketplace.services.status_history import log_transition, record_transition
from marketplace.services.task_state import (
    APPROVE,
    CANCEL,
    REJECT_REVIEW,
    SELECT_EXECUTOR,
    SEND_TO_REVIEW,
    Transition,
)

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.db.queryset import QuerySet
    from marketplace.services.notifications.dispatcher import NotificationDispatcher
    from marketplace.services.notifications.queue import NotificationEvent

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_CATEGORY_LENGTH = 80
MAX_TAGS = 30
MAX_TAG_LENGTH = 40
MAX_STATUS_COMMENT_LENGTH = 2000

TASK_NOT_FOUND = "Task not found."
NO_ASSIGNED_EXECUTOR = "Task has no assigned executor."
EXECUTOR_ALREADY_SELECTED = "Executor has already been selected for this task."
EDITABLE_FIELDS = ("title", "description", "budget", "category", "deadline_at", "tags")

TaskSort = Literal["new", "budget", "budget_desc", "budget_asc"]
TASK_SORTS: tuple[str, ...] = get_args(TaskSort)


@dataclass(frozen=True)
class TaskDraft:
    """Validated, normalized fields for a new task."""

    title: str
    description: str
    budget: Decimal
    deadline_at: datetime | None
    category: str
    tags: list[str]


@dataclass(frozen=True)
class TaskListFilters:
    status: TaskStatus = TaskStatus.OPEN
    category: str | None = None
    q: str | None = None
    budget_min: Decimal | None = None
    budget_max: Decimal | None = None
    sort: TaskSort = "new"


_FIELD_VALIDATORS = {
    "title": lambda value: required_text(value, "title", max_length=MAX_TITLE_LENGTH),
    "description": lambda value: required_text(
        value,
        "description",
        max_length=MAX_DESCRIPTION_LENGTH,
    ),
    "budget": lambda value: positive_decimal(value, "budget"),
    "category": lambda value: required_text(value, "category", max_length=MAX_CATEGORY_LENGTH),
    "deadline_at": optional_deadline,
    "tags": lambda value: tag_list(value, max_items=MAX_TAGS, max_length=MAX_TAG_LENGTH),
}


def validate_task_create(
    *,
    title: object,
    description: object,
    budget: object,
    category: object,
    deadline_at: object = None,
    tags: object = None,
) -> Result[TaskDraft]:
    raw = {
        "title": title,
        "description": description,
        "budget": budget,
        "deadline_at": deadline_at,
        "category": category,
        "tags": tags,
    }
    result = collect({name: _FIELD_VALIDATORS[name](value) for name, value in raw.items()})
    if isinstance(result, Invalid):
        return result
    return Valid(TaskDraft(**result.value))


def validate_task_update(changes: Mapping[str, object]) -> Result[dict[str, Any]]:
    """Validate only the supplied editable fields; at least one is required."""
    provided = {name: changes[name] for name in EDITABLE_FIELDS if name in changes}
    if not provided:
        return Invalid("No valid fields to update.")
    return collect({name: _FIELD_VALIDATORS[name](value) for name, value in provided.items()})


def validate_status_comment(value: object) -> Result[str]:
    return required_text(value, "comment", max_length=MAX_STATUS_COMMENT_LENGTH)


def validate_task_filters(
    *,
    status: str | None = None,
    category: str | None = None,
    q: str | None = None,
    budget_min: str | None = None,
    budget_max: str | None = None,
    sort: str | None = None,
) -> Result[TaskListFilters]:
    status_raw = optional_text(status)
    if status_raw is not None and status_raw not in TaskStatus.__members__:
        return Invalid("status must be a valid task status.", "status")
    sort_raw = optional_text(sort) or "new"
    if sort_raw not in TASK_SORTS:
        return Invalid(f"sort must be one of: {', '.join(TASK_SORTS)}.", "sort")

    bounds: dict[str, Decimal | None] = {}
    for name, raw in (("budget_min", budget_min), ("budget_max", budget_max)):
        text = optional_text(raw)
        if text is None:
            bounds[name] = None
            continue
        parsed = positive_decimal(text, name)
        if isinstance(parsed, Invalid):
            return parsed
        bounds[name] = parsed.value
    low, high = bounds["budget_min"], bounds["budget_max"]
    if low is not None and high is not None and low > high:
        return Invalid("budget_min must be <= budget_max.", "budget_min")

    return Valid(
        TaskListFilters(
            status=TaskStatus(status_raw) if status_raw else TaskStatus.OPEN,
            category=optional_text(category),
            q=optional_text(q),
            budget_min=low,
            budget_max=high,
            sort=cast(TaskSort, sort_raw),
        ),
    )


async def _lock_task(session: AsyncSession, task_id: UUID) -> Task:
    task = await Task.objects.by_id(task_id).for_update().first(session)
    if task is None:
        raise NotFoundError(TASK_NOT_FOUND)
    return task


async def _load_assignment(session: AsyncSession, task_id: UUID) -> Assignment | None:
    return await Assignment.objects.filter(col(Assignment.task_id) == task_id).first(session)


def _check_transition(
    transition: Transition,
    task: Task,
    assignment: Assignment | None,
    actor_id: UUID,
) -> None:
    if transition.actor == "owner" and task.customer_id != actor_id:
        raise ForbiddenError(transition.forbidden_message)
    if task.status != transition.source.value:
        raise ValidationError(transition.invalid_state_message)
    if transition.requires_assignment and assignment is None:
        raise ValidationError(NO_ASSIGNED_EXECUTOR)
    if transition.actor == "executor" and (
        assignment is None or assignment.executor_id != actor_id
    ):
        raise ForbiddenError(transition.forbidden_message)


def _assigned(assignment: Assignment | None) -> Assignment:
    if assignment is None:
        raise ValidationError(NO_ASSIGNED_EXECUTOR)
    return assignment


async def _move(
    session: AsyncSession,
    task: Task,
    transition: Transition,
    *,
    actor_id: UUID,
    comment: str | None = None,
) -> TaskStatusHistory | None:
    source = TaskStatus(task.status)
    task.status = transition.target.value
    task.updated_at = utcnow()
    session.add(task)
    entry = await record_transition(
        session,
        task_id=task.id,
        from_status=source,
        to_status=transition.target,
        changed_by=actor_id,
        comment=comment,
    )
    logger.info(
        "task.lifecycle.transition",
        extra={
            "task_id": str(task.id),
            "transition": transition.name,
            "from_status": source.value,
            "to_status": transition.target.value,
            "actor_id": str(actor_id),
        },
    )
    return entry


def _add_notification(session: AsyncSession, event: NotificationEvent) -> None:
    session.add(
        Notification(
            user_id=event.user_id,
            type=event.type,
            title=event.title,
            body=event.body,
            payload={"task_id": str(event.task_id), **event.payload},
        ),
    )


def _push_after_commit(
    dispatcher: NotificationDispatcher | None,
    event: NotificationEvent | None,
) -> None:
    if dispatcher is None or event is None:
        return
    dispatcher.push(event)


async def get_task(session: AsyncSession, task_id: UUID) -> Task:
    task = await Task.objects.by_id(task_id).first(session)
    if task is None:
        raise NotFoundError(TASK_NOT_FOUND)
    return task


async def create_task(session: AsyncSession, *, customer_id: UUID, draft: TaskDraft) -> Task:
    """Insert an OPEN task with its creation history row."""
    async with atomic(session):
        task = Task(
            customer_id=customer_id,
            title=draft.title,
            description=draft.description,
            budget=draft.budget,
            deadline_at=draft.deadline_at,
            category=draft.category,
            tags=list(draft.tags),
            status=TaskStatus.OPEN.value,
        )
        session.add(task)
        await session.flush()
        entry = await record_transition(
            session,
            task_id=task.id,
            from_status=None,
            to_status=TaskStatus.OPEN,
            changed_by=customer_id,
        )
    log_transition(entry)
    logger.info(
        "task.created",
        extra={"task_id": str(task.id), "customer_id": str(customer_id)},
    )
    return task


async def update_task(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    changes: Mapping[str, object],
) -> Task:
    """Apply owner edits to an OPEN task."""
    async with atomic(session):
        task = await _lock_task(session, task_id)
        if task.customer_id != actor_id:
            raise ForbiddenError("Only task owner can edit this task.")
        if task.status != TaskStatus.OPEN.value:
            raise ValidationError("Only OPEN tasks can be edited.")
        values = unwrap(validate_task_update(changes))
        for name, value in values.items():
            setattr(task, name, value)
        task.updated_at = utcnow()
        session.add(task)
    logger.info(
        "task.updated",
        extra={"task_id": str(task.id), "fields": sorted(values)},
    )
    return task


async def cancel_task(session: AsyncSession, *, task_id: UUID, actor_id: UUID) -> Task:
    async with atomic(session):
        task = await _lock_task(session, task_id)
        assignment = await _load_assignment(session, task.id)
        _check_transition(CANCEL, task, assignment, actor_id)
        entry = await _move(session, task, CANCEL, actor_id=actor_id)
    log_transition(entry)
    return task


async def select_proposal(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    proposal_id: UUID,
    dispatcher: NotificationDispatcher | None = None,
) -> Task:
    """Assign the proposal's executor and move the task to IN_PROGRESS.

    The unique assignment per task is authoritative: losing a concurrent
    selection surfaces as ``ConflictError`` even when the pre-check passed.
    """
    try:
        async with atomic(session):
            task = await _lock_task(session, task_id)
            assignment = await _load_assignment(session, task.id)
            _check_transition(SELECT_EXECUTOR, task, assignment, actor_id)
            if assignment is not None:
                raise ValidationError(EXECUTOR_ALREADY_SELECTED)

            proposal = await Proposal.objects.by_id(proposal_id).first(session)
            if proposal is None or proposal.task_id != task.id:
                raise NotFoundError("Proposal not found for this task.")
            already_selected = await Assignment.objects.filter(
                col(Assignment.selected_proposal_id) == proposal.id,
            ).exists(session)
            if already_selected:
                raise ValidationError("Proposal has already been selected.")

            session.add(
                Assignment(
                    task_id=task.id,
                    customer_id=actor_id,
                    executor_id=proposal.executor_id,
                    selected_proposal_id=proposal.id,
                ),
            )
            await session.flush()

            event = build_event(
                NotificationType.EXECUTOR_SELECTED,
                user_id=proposal.executor_id,
                task_id=task.id,
                task_title=task.title,
                payload={"proposal_id": str(proposal.id)},
            )
            _add_notification(session, event)
            entry = await _move(session, task, SELECT_EXECUTOR, actor_id=actor_id)
    except IntegrityError as exc:
        logger.info(
            "task.lifecycle.select_conflict",
            extra={"task_id": str(task_id), "proposal_id": str(proposal_id)},
        )
        raise ConflictError(EXECUTOR_ALREADY_SELECTED) from exc

    log_transition(entry)
    _push_after_commit(dispatcher, event)
    return task


async def send_to_review(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    dispatcher: NotificationDispatcher | None = None,
) -> Task:
    async with atomic(session):
        task = await _lock_task(session, task_id)
        assignment = await _load_assignment(session, task.id)
        _check_transition(SEND_TO_REVIEW, task, assignment, actor_id)
        event = build_event(
            NotificationType.TASK_SENT_TO_REVIEW,
            user_id=task.customer_id,
            task_id=task.id,
            task_title=task.title,
        )
        _add_notification(session, event)
        entry = await _move(session, task, SEND_TO_REVIEW, actor_id=actor_id)
    log_transition(entry)
    _push_after_commit(dispatcher, event)
    return task


async def approve_task(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    dispatcher: NotificationDispatcher | None = None,
) -> Task:
    async with atomic(session):
        task = await _lock_task(session, task_id)
        assignment = await _load_assignment(session, task.id)
        _check_transition(APPROVE, task, assignment, actor_id)
        event = build_event(
            NotificationType.TASK_APPROVED,
            user_id=_assigned(assignment).executor_id,
            task_id=task.id,
            task_title=task.title,
        )
        _add_notification(session, event)
        entry = await _move(session, task, APPROVE, actor_id=actor_id)
    log_transition(entry)
    _push_after_commit(dispatcher, event)
    return task


async def reject_review(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
    comment: object,
    dispatcher: NotificationDispatcher | None = None,
) -> Task:
    """Return a task under review to IN_PROGRESS with a required comment."""
    normalized = unwrap(validate_status_comment(comment))
    async with atomic(session):
        task = await _lock_task(session, task_id)
        assignment = await _load_assignment(session, task.id)
        _check_transition(REJECT_REVIEW, task, assignment, actor_id)
        event = build_event(
            NotificationType.TASK_REJECTED,
            user_id=_assigned(assignment).executor_id,
            task_id=task.id,
            task_title=task.title,
            payload={"comment": normalized},
        )
        _add_notification(session, event)
        entry = await _move(session, task, REJECT_REVIEW, actor_id=actor_id, comment=normalized)
    log_transition(entry)
    _push_after_commit(dispatcher, event)
    return task


def _feed_query(filters: TaskListFilters) -> QuerySet[Task]:
    query = Task.objects.filter(col(Task.status) == filters.status.value)
    if filters.category is not None:
        query = query.filter(col(Task.category) == filters.category)
    if filters.q is not None:
        query = query.filter(
            or_(
                col(Task.title).icontains(filters.q, autoescape=True),
                col(Task.description).icontains(filters.q, autoescape=True),
            ),
        )
    if filters.budget_min is not None:
        query = query.filter(col(Task.budget) >= filters.budget_min)
    if filters.budget_max is not None:
        query = query.filter(col(Task.budget) <= filters.budget_max)
    if filters.sort == "budget_asc":
        return query.order_by(col(Task.budget).asc(), col(Task.created_at).desc())
    if filters.sort in ("budget", "budget_desc"):
        return query.order_by(col(Task.budget).desc(), col(Task.created_at).desc())
    return query.order_by(col(Task.created_at).desc())


async def list_tasks(
    session: AsyncSession,
    *,
    filters: TaskListFilters,
    page: int,
    limit: int,
) -> Page[Task]:
    return await paginate(session, _feed_query(filters), page=page, limit=limit)


async def list_status_history(session: AsyncSession, task_id: UUID) -> list[TaskStatusHistory]:
    """Newest-first transition log of an existing task."""
    await get_task(session, task_id)
    return await (
        TaskStatusHistory.objects.filter(col(TaskStatusHistory.task_id) == task_id)
        .order_by(col(TaskStatusHistory.created_at).desc())
        .all(session)
    )
