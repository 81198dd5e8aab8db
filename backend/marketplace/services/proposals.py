"""Proposal engine: executor bids on OPEN tasks."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from marketplace.core.errors import ForbiddenError, NotFoundError, ValidationError
from marketplace.core.logging import get_logger
from marketplace.core.time import utcnow
from marketplace.core.validation import (
    Invalid,
    Result,
    Valid,
    collect,
    positive_decimal,
    positive_int,
    required_text,
    unwrap,
)
from marketplace.db.pagination import Page, paginate
from marketplace.db.session import atomic
from marketplace.models.assignments import Assignment
from marketplace.models.notifications import NotificationType
from marketplace.models.proposals import Proposal
from marketplace.models.tasks import Task, TaskStatus
from marketplace.services.notifications.templates import build_event
from marketplace.services.tasks import EXECUTOR_ALREADY_SELECTED, get_task

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.services.notifications.dispatcher import NotificationDispatcher

logger = get_logger(__name__)

MAX_PROPOSAL_COMMENT_LENGTH = 3000
DUPLICATE_PROPOSAL = "Only one proposal per executor is allowed for a task."
EDITABLE_FIELDS = ("price", "comment", "eta_days")


@dataclass(frozen=True)
class ProposalDraft:
    price: Decimal
    comment: str
    eta_days: int


_FIELD_VALIDATORS = {
    "price": lambda value: positive_decimal(value, "price"),
    "comment": lambda value: required_text(
        value,
        "comment",
        max_length=MAX_PROPOSAL_COMMENT_LENGTH,
    ),
    "eta_days": lambda value: positive_int(value, "eta_days"),
}


def validate_proposal_create(
    *,
    price: object,
    comment: object,
    eta_days: object,
) -> Result[ProposalDraft]:
    result = collect(
        {
            "price": _FIELD_VALIDATORS["price"](price),
            "comment": _FIELD_VALIDATORS["comment"](comment),
            "eta_days": _FIELD_VALIDATORS["eta_days"](eta_days),
        },
    )
    if isinstance(result, Invalid):
        return result
    return Valid(ProposalDraft(**result.value))


def validate_proposal_update(changes: Mapping[str, object]) -> Result[dict[str, Any]]:
    provided = {name: changes[name] for name in EDITABLE_FIELDS if name in changes}
    if not provided:
        return Invalid("No valid fields to update.")
    return collect({name: _FIELD_VALIDATORS[name](value) for name, value in provided.items()})


async def _has_assignment(session: AsyncSession, task_id: UUID) -> bool:
    return await Assignment.objects.filter(col(Assignment.task_id) == task_id).exists(session)


async def create_proposal(
    session: AsyncSession,
    *,
    task_id: UUID,
    executor_id: UUID,
    draft: ProposalDraft,
    dispatcher: NotificationDispatcher | None = None,
) -> Proposal:
    """Record an executor's bid and notify the task owner after commit.

    The pre-read duplicate check gives the friendly error; the unique
    ``(task_id, executor_id)`` constraint decides concurrent submissions.
    """
    try:
        async with atomic(session):
            task = await get_task(session, task_id)
            if task.status != TaskStatus.OPEN.value:
                raise ValidationError("Task is not open for proposals.")
            if task.customer_id == executor_id:
                raise ValidationError("You cannot create a proposal for your own task.")
            if await _has_assignment(session, task.id):
                raise ValidationError(EXECUTOR_ALREADY_SELECTED)
            duplicate = await Proposal.objects.filter(
                col(Proposal.task_id) == task.id,
                col(Proposal.executor_id) == executor_id,
            ).exists(session)
            if duplicate:
                raise ValidationError(DUPLICATE_PROPOSAL)

            proposal = Proposal(
                task_id=task.id,
                executor_id=executor_id,
                price=draft.price,
                comment=draft.comment,
                eta_days=draft.eta_days,
            )
            session.add(proposal)
            await session.flush()
    except IntegrityError as exc:
        logger.info(
            "proposal.create.duplicate",
            extra={"task_id": str(task_id), "executor_id": str(executor_id)},
        )
        raise ValidationError(DUPLICATE_PROPOSAL) from exc

    logger.info(
        "proposal.created",
        extra={"proposal_id": str(proposal.id), "task_id": str(task_id)},
    )
    if dispatcher is not None:
        dispatcher.notify(
            build_event(
                NotificationType.PROPOSAL_CREATED,
                user_id=task.customer_id,
                task_id=task.id,
                task_title=task.title,
                payload={"proposal_id": str(proposal.id)},
            ),
        )
    return proposal


async def _get_mutable_proposal(
    session: AsyncSession,
    *,
    proposal_id: UUID,
    actor_id: UUID,
) -> Proposal:
    proposal = await Proposal.objects.by_id(proposal_id).for_update().first(session)
    if proposal is None:
        raise NotFoundError("Proposal not found.")
    if proposal.executor_id != actor_id:
        raise ForbiddenError("Only proposal author can modify this proposal.")
    task = await get_task(session, proposal.task_id)
    if task.status != TaskStatus.OPEN.value:
        raise ValidationError("Only OPEN task proposals can be modified.")
    if await _has_assignment(session, task.id):
        raise ValidationError("Proposal cannot be modified after executor selection.")
    return proposal


async def update_proposal(
    session: AsyncSession,
    *,
    proposal_id: UUID,
    actor_id: UUID,
    changes: Mapping[str, object],
) -> Proposal:
    async with atomic(session):
        proposal = await _get_mutable_proposal(
            session,
            proposal_id=proposal_id,
            actor_id=actor_id,
        )
        values = unwrap(validate_proposal_update(changes))
        for name, value in values.items():
            setattr(proposal, name, value)
        proposal.updated_at = utcnow()
        session.add(proposal)
    return proposal


async def delete_proposal(session: AsyncSession, *, proposal_id: UUID, actor_id: UUID) -> None:
    async with atomic(session):
        proposal = await _get_mutable_proposal(
            session,
            proposal_id=proposal_id,
            actor_id=actor_id,
        )
        await session.delete(proposal)
    logger.info("proposal.deleted", extra={"proposal_id": str(proposal_id)})


async def list_proposals_for_task(
    session: AsyncSession,
    *,
    task_id: UUID,
    actor_id: UUID,
) -> list[Proposal]:
    """Owner sees every proposal; an author sees only their own."""
    task = await get_task(session, task_id)
    query = Proposal.objects.filter(col(Proposal.task_id) == task.id)
    if task.customer_id == actor_id:
        return await query.order_by(col(Proposal.created_at).desc()).all(session)
    own = await query.filter(col(Proposal.executor_id) == actor_id).first(session)
    if own is None:
        raise ForbiddenError("Only task owner or proposal author can view proposals.")
    return [own]


async def list_my_proposals(
    session: AsyncSession,
    *,
    actor_id: UUID,
    page: int,
    limit: int,
    status: TaskStatus | None = None,
) -> Page[Proposal]:
    query = Proposal.objects.filter(col(Proposal.executor_id) == actor_id)
    if status is not None:
        query = query.filter(
            col(Proposal.task_id).in_(
                select(Task.id).where(col(Task.status) == status.value),
            ),
        )
    query = query.order_by(col(Proposal.created_at).desc())
    return await paginate(session, query, page=page, limit=limit)
