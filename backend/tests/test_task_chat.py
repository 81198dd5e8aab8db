# ruff: noqa: INP001
"""Task chat access rules and message ordering."""

from __future__ import annotations

from itertools import count

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from marketplace.core.errors import ForbiddenError, ValidationError
from marketplace.core.validation import unwrap
from marketplace.models.tasks import Task
from marketplace.models.users import User
from marketplace.services import chat, proposals, tasks

_TELEGRAM_IDS = count(9000)


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


async def _seed_user(session: AsyncSession, name: str) -> User:
    user = User(telegram_id=next(_TELEGRAM_IDS), display_name=name)
    session.add(user)
    await session.commit()
    return user


async def _assigned_task(session: AsyncSession, customer: User, executor: User) -> Task:
    task = await tasks.create_task(
        session,
        customer_id=customer.id,
        draft=unwrap(
            tasks.validate_task_create(
                title="Fix checkout bug",
                description="Stripe webhook retries",
                budget="800",
                category="development",
            ),
        ),
    )
    proposal = await proposals.create_proposal(
        session,
        task_id=task.id,
        executor_id=executor.id,
        draft=unwrap(proposals.validate_proposal_create(price="700", comment="On it", eta_days=1)),
    )
    return await tasks.select_proposal(
        session, task_id=task.id, actor_id=customer.id, proposal_id=proposal.id
    )


@pytest.mark.asyncio
async def test_chat_is_closed_until_an_executor_is_selected() -> None:
    engine = await _make_engine()
    try:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            customer = await _seed_user(session, "customer")
            task = await tasks.create_task(
                session,
                customer_id=customer.id,
                draft=unwrap(
                    tasks.validate_task_create(
                        title="Open task", description="d", budget="10", category="misc"
                    ),
                ),
            )
            with pytest.raises(
                ForbiddenError,
                match="Chat is available only after executor selection.",
            ):
                await chat.post_message(
                    session, task_id=task.id, actor_id=customer.id, text="hello"
                )
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_participants_exchange_messages_and_strangers_are_rejected() -> None:
    engine = await _make_engine()
    try:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            customer = await _seed_user(session, "customer")
            executor = await _seed_user(session, "executor")
            stranger = await _seed_user(session, "stranger")
            task = await _assigned_task(session, customer, executor)
            task_id, stranger_id = task.id, stranger.id

            await chat.post_message(session, task_id=task.id, actor_id=customer.id, text=" hi ")
            await chat.post_message(session, task_id=task.id, actor_id=executor.id, text="hello")
            await chat.post_message(session, task_id=task.id, actor_id=customer.id, text="ETA?")

            messages = await chat.list_messages(session, task_id=task.id, actor_id=executor.id)
            assert [m.text for m in messages] == ["hi", "hello", "ETA?"]

            latest_two = await chat.list_messages(
                session, task_id=task.id, actor_id=customer.id, limit=2
            )
            assert [m.text for m in latest_two] == ["hello", "ETA?"]

            with pytest.raises(
                ForbiddenError,
                match="Only task customer and assigned executor can access chat.",
            ):
                await chat.list_messages(session, task_id=task_id, actor_id=stranger_id)
            with pytest.raises(ForbiddenError):
                await chat.post_message(
                    session, task_id=task_id, actor_id=stranger_id, text="let me in"
                )
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_message_text_is_validated_before_access_checks() -> None:
    engine = await _make_engine()
    try:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            customer = await _seed_user(session, "customer")
            executor = await _seed_user(session, "executor")
            task = await _assigned_task(session, customer, executor)
            task_id, customer_id = task.id, customer.id

            with pytest.raises(ValidationError, match="text is required."):
                await chat.post_message(session, task_id=task_id, actor_id=customer_id, text="  ")
            with pytest.raises(ValidationError, match="text must be at most 4000 characters."):
                await chat.post_message(
                    session, task_id=task_id, actor_id=customer_id, text="x" * 4001
                )
    finally:
        await engine.dispose()
