"""Task feed, owner edits, lifecycle transitions, proposals, and chat endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import col

from marketplace.api.deps import (
    AUTH_DEP,
    DISPATCHER_DEP,
    ERROR_RESPONSES,
    PAGE_DEP,
    RATE_LIMITED_RESPONSES,
    SESSION_DEP,
    PageParams,
    rate_limited,
    summarize_users,
)
from marketplace.core.auth import AuthContext
from marketplace.core.validation import page_limit, unwrap
from marketplace.models.assignments import Assignment
from marketplace.schemas.messages import (
    TaskMessageCreate,
    TaskMessageListResponse,
    TaskMessageRead,
    TaskMessageResponse,
)
from marketplace.schemas.proposals import (
    ProposalCreate,
    ProposalListResponse,
    ProposalRead,
    ProposalResponse,
)
from marketplace.schemas.tasks import (
    AssignmentSummary,
    RejectReviewPayload,
    SelectProposalPayload,
    StatusHistoryListResponse,
    StatusHistoryRead,
    TaskCreate,
    TaskListResponse,
    TaskRead,
    TaskResponse,
    TaskUpdate,
)
from marketplace.services import chat, proposals, tasks
from marketplace.services.rate_limit import PROPOSAL_CREATE_SCOPE, TASK_CREATE_SCOPE

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.models.proposals import Proposal
    from marketplace.models.task_messages import TaskMessage
    from marketplace.models.tasks import Task
    from marketplace.schemas.users import UserSummary
    from marketplace.services.notifications.dispatcher import NotificationDispatcher

router = APIRouter(prefix="/tasks", tags=["tasks"], responses=ERROR_RESPONSES)
TASK_CREATE_LIMIT_DEP = Depends(rate_limited(TASK_CREATE_SCOPE))
PROPOSAL_CREATE_LIMIT_DEP = Depends(rate_limited(PROPOSAL_CREATE_SCOPE))


def _task_to_read(
    task: Task,
    *,
    customer: UserSummary | None = None,
    assignment: Assignment | None = None,
) -> TaskRead:
    model = TaskRead.model_validate(task, from_attributes=True)
    model.customer = customer
    if assignment is not None:
        model.assignment = AssignmentSummary.model_validate(assignment, from_attributes=True)
    return model


async def _tasks_to_read(session: AsyncSession, items: list[Task]) -> list[TaskRead]:
    """Attach customer summaries and assignments with one query each."""
    if not items:
        return []
    customers = await summarize_users(session, (task.customer_id for task in items))
    assignments = await Assignment.objects.filter(
        col(Assignment.task_id).in_([task.id for task in items]),
    ).all(session)
    by_task = {assignment.task_id: assignment for assignment in assignments}
    return [
        _task_to_read(
            task,
            customer=customers.get(task.customer_id),
            assignment=by_task.get(task.id),
        )
        for task in items
    ]


async def _task_response(session: AsyncSession, task: Task) -> TaskResponse:
    (read,) = await _tasks_to_read(session, [task])
    return TaskResponse(task=read)


async def _proposals_to_read(session: AsyncSession, items: list[Proposal]) -> list[ProposalRead]:
    executors = await summarize_users(session, (proposal.executor_id for proposal in items))
    reads = []
    for proposal in items:
        model = ProposalRead.model_validate(proposal, from_attributes=True)
        model.executor = executors.get(proposal.executor_id)
        reads.append(model)
    return reads


async def _messages_to_read(
    session: AsyncSession,
    items: list[TaskMessage],
) -> list[TaskMessageRead]:
    senders = await summarize_users(session, (message.sender_id for message in items))
    reads = []
    for message in items:
        model = TaskMessageRead.model_validate(message, from_attributes=True)
        model.sender = senders.get(message.sender_id)
        reads.append(model)
    return reads


@router.post(
    "",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[TASK_CREATE_LIMIT_DEP],
    responses=RATE_LIMITED_RESPONSES,
)
async def create_task_endpoint(
    payload: TaskCreate,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> TaskResponse:
    """Post a new OPEN task owned by the caller."""
    draft = unwrap(
        tasks.validate_task_create(
            title=payload.title,
            description=payload.description,
            budget=payload.budget,
            category=payload.category,
            deadline_at=payload.deadline_at,
            tags=payload.tags,
        ),
    )
    task = await tasks.create_task(session, customer_id=auth.user_id, draft=draft)
    return await _task_response(session, task)


@router.get("", response_model=TaskListResponse)
async def list_tasks_endpoint(
    status_filter: str | None = Query(default=None, alias="status"),
    category: str | None = Query(default=None),
    q: str | None = Query(default=None),
    budget_min: str | None = Query(default=None),
    budget_max: str | None = Query(default=None),
    budget_from: str | None = Query(default=None),
    budget_to: str | None = Query(default=None),
    sort: str | None = Query(default=None),
    paging: PageParams = PAGE_DEP,
    session: AsyncSession = SESSION_DEP,
    _auth: AuthContext = AUTH_DEP,
) -> TaskListResponse:
    """Browse the task feed; OPEN tasks newest first unless filtered otherwise."""
    filters = unwrap(
        tasks.validate_task_filters(
            status=status_filter,
            category=category,
            q=q,
            budget_min=budget_min if budget_min is not None else budget_from,
            budget_max=budget_max if budget_max is not None else budget_to,
            sort=sort,
        ),
    )
    page = await tasks.list_tasks(session, filters=filters, page=paging.page, limit=paging.limit)
    return TaskListResponse(
        items=await _tasks_to_read(session, page.items),
        pagination=page.pagination(),
    )


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task_endpoint(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _auth: AuthContext = AUTH_DEP,
) -> TaskResponse:
    task = await tasks.get_task(session, task_id)
    return await _task_response(session, task)


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task_endpoint(
    task_id: UUID,
    payload: TaskUpdate,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> TaskResponse:
    """Edit an OPEN task; only fields present in the body are changed."""
    task = await tasks.update_task(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    return await _task_response(session, task)


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task_endpoint(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> TaskResponse:
    task = await tasks.cancel_task(session, task_id=task_id, actor_id=auth.user_id)
    return await _task_response(session, task)


@router.post(
    "/{task_id}/proposals",
    response_model=ProposalResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[PROPOSAL_CREATE_LIMIT_DEP],
    responses=RATE_LIMITED_RESPONSES,
)
async def create_proposal_endpoint(
    task_id: UUID,
    payload: ProposalCreate,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
    dispatcher: NotificationDispatcher = DISPATCHER_DEP,
) -> ProposalResponse:
    """Bid on an OPEN task; the owner is notified after commit."""
    draft = unwrap(
        proposals.validate_proposal_create(
            price=payload.price,
            comment=payload.comment,
            eta_days=payload.eta_days,
        ),
    )
    proposal = await proposals.create_proposal(
        session,
        task_id=task_id,
        executor_id=auth.user_id,
        draft=draft,
        dispatcher=dispatcher,
    )
    (read,) = await _proposals_to_read(session, [proposal])
    return ProposalResponse(proposal=read)


@router.get("/{task_id}/proposals", response_model=ProposalListResponse)
async def list_task_proposals_endpoint(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> ProposalListResponse:
    """Owner sees every proposal; a bidder sees only their own."""
    items = await proposals.list_proposals_for_task(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
    )
    return ProposalListResponse(items=await _proposals_to_read(session, items))


@router.post("/{task_id}/select-proposal", response_model=TaskResponse)
async def select_proposal_endpoint(
    task_id: UUID,
    payload: SelectProposalPayload,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
    dispatcher: NotificationDispatcher = DISPATCHER_DEP,
) -> TaskResponse:
    task = await tasks.select_proposal(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        proposal_id=payload.proposal_id,
        dispatcher=dispatcher,
    )
    return await _task_response(session, task)


@router.post("/{task_id}/send-to-review", response_model=TaskResponse)
async def send_to_review_endpoint(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
    dispatcher: NotificationDispatcher = DISPATCHER_DEP,
) -> TaskResponse:
    task = await tasks.send_to_review(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        dispatcher=dispatcher,
    )
    return await _task_response(session, task)


@router.post("/{task_id}/approve", response_model=TaskResponse)
async def approve_task_endpoint(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
    dispatcher: NotificationDispatcher = DISPATCHER_DEP,
) -> TaskResponse:
    task = await tasks.approve_task(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        dispatcher=dispatcher,
    )
    return await _task_response(session, task)


@router.post("/{task_id}/reject-review", response_model=TaskResponse)
async def reject_review_endpoint(
    task_id: UUID,
    payload: RejectReviewPayload,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
    dispatcher: NotificationDispatcher = DISPATCHER_DEP,
) -> TaskResponse:
    """Send the work back to the executor with a required comment."""
    task = await tasks.reject_review(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        comment=payload.comment,
        dispatcher=dispatcher,
    )
    return await _task_response(session, task)


@router.get("/{task_id}/status-history", response_model=StatusHistoryListResponse)
async def list_status_history_endpoint(
    task_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _auth: AuthContext = AUTH_DEP,
) -> StatusHistoryListResponse:
    rows = await tasks.list_status_history(session, task_id)
    actors = await summarize_users(session, (row.changed_by for row in rows))
    items = []
    for row in rows:
        model = StatusHistoryRead.model_validate(row, from_attributes=True)
        model.changed_by_user = actors.get(row.changed_by)
        items.append(model)
    return StatusHistoryListResponse(items=items)


@router.get("/{task_id}/messages", response_model=TaskMessageListResponse)
async def list_messages_endpoint(
    task_id: UUID,
    limit: int | None = Query(default=None),
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> TaskMessageListResponse:
    """Most recent chat messages, oldest first; participants only."""
    items = await chat.list_messages(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        limit=unwrap(
            page_limit(limit, default=chat.DEFAULT_CHAT_LIMIT, maximum=chat.MAX_CHAT_LIMIT),
        ),
    )
    return TaskMessageListResponse(items=await _messages_to_read(session, items))


@router.post(
    "/{task_id}/messages",
    response_model=TaskMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def post_message_endpoint(
    task_id: UUID,
    payload: TaskMessageCreate,
    session: AsyncSession = SESSION_DEP,
    auth: AuthContext = AUTH_DEP,
) -> TaskMessageResponse:
    message = await chat.post_message(
        session,
        task_id=task_id,
        actor_id=auth.user_id,
        text=payload.text,
    )
    (read,) = await _messages_to_read(session, [message])
    return TaskMessageResponse(message=read)
