"""Executor-side proposal endpoints: own bids, edits, and withdrawal."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Query, Response, status
from sqlmodel import col

from marketplace.api.deps import (
    AUTH_DEP,
    ERROR_RESPONSES,
    PAGE_DEP,
    SESSION_DEP,
    PageParams,
    summarize_users,
)
from marketplace.core.auth import AuthContext
from marketplace.core.errors import ValidationError
from marketplace.core.validation import optional_text
from marketplace.models.tasks import Task, TaskStatus
from marketplace.schemas.proposals import (
    MyProposalListResponse,
    MyProposalRead,
    ProposalRead,
    ProposalResponse,
    ProposalTaskSummary,
    ProposalUpdate,
)
from marketplace.services import proposals

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.models.proposals import Proposal

router = APIRouter(prefix="/proposals", tags=["proposals"], responses=ERROR_RESPONSES)


def _status_filter(value: str | None) -> TaskStatus | None:
    normalized = optional_text(value)
    if normalized is None:
        return None
    if normalized not in TaskStatus.__members__:
        raise ValidationError("status must be a valid task status.", {"field": "status"})
    return TaskStatus(normalized)


async def _proposal_to_read(session: AsyncSession, proposal: Proposal) -> ProposalRead:
    executors = await summarize_users(session, [proposal.executor_id])
    model = ProposalRead.model_validate(proposal, from_attributes=True)
    model.executor = executors.get(proposal.executor_id)
    return model


async def _my_proposals_to_read(
    session: AsyncSession,
    items: list[Proposal],
) -> list[MyProposalRead]:
    """Join each proposal with its task summary and both parties' summaries."""
    if not items:
        return []
    task_rows = await Task.objects.filter(
        col(Task.id).in_({proposal.task_id for proposal in items}),
    ).all(session)
    tasks_by_id = {task.id: task for task in task_rows}
    users = await summarize_users(
        session,
        [proposal.executor_id for proposal in items] + [task.customer_id for task in task_rows],
    )
    reads = []
    for proposal in items:
        model = MyProposalRead.model_validate(proposal, from_attributes=True)
        model.executor = users.get(proposal.executor_id)
        task = tasks_by_id.get(proposal.task_id)
        if task is not None:
            summary = ProposalTaskSummary.model_validate(task, from_attributes=True)
            summary.customer = users.get(task.customer_id)
            model.task = summary
        reads.append(model)
    return reads


@router.get("/my", response_model=MyProposalListResponse)
async def list_my_proposals_endpoint(
    status_filter: str | None = Query(default=None, alias="status"),
    paging: PageParams = PAGE_DEP,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> MyProposalListResponse:
    """The caller's proposals, newest first, optionally by task status."""
    page = await proposals.list_my_proposals(
        session,
        actor_id=auth.user_id,
        page=paging.page,
        limit=paging.limit,
        status=_status_filter(status_filter),
    )
    return MyProposalListResponse(
        items=await _my_proposals_to_read(session, page.items),
        pagination=page.pagination(),
    )


@router.patch("/{proposal_id}", response_model=ProposalResponse)
async def update_proposal_endpoint(
    proposal_id: UUID,
    payload: ProposalUpdate,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> ProposalResponse:
    proposal = await proposals.update_proposal(
        session,
        proposal_id=proposal_id,
        actor_id=auth.user_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return ProposalResponse(proposal=await _proposal_to_read(session, proposal))


@router.delete(
    "/{proposal_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def delete_proposal_endpoint(
    proposal_id: UUID,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> Response:
    """Withdraw a proposal while its task is still OPEN and unassigned."""
    await proposals.delete_proposal(session, proposal_id=proposal_id, actor_id=auth.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
