# ruff: noqa: INP001
"""End-to-end HTTP tests for the marketplace API routers."""

from __future__ import annotations

from itertools import count
from typing import Any
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from marketplace.core.auth import sign_auth_token
from marketplace.db.session import build_session_maker
from marketplace.main import create_app
from marketplace.models.users import User
from marketplace.services.notifications import NotificationDispatcher
from marketplace.services.rate_limit import InMemoryRateLimiter

_TELEGRAM_IDS = count(31_000)


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


async def _seed_user(engine: AsyncEngine, name: str, **overrides: object) -> User:
    async with AsyncSession(engine, expire_on_commit=False) as session:
        user = User(telegram_id=next(_TELEGRAM_IDS), display_name=name, **overrides)
        session.add(user)
        await session.commit()
        return user


def _headers(user: User) -> dict[str, str]:
    token = sign_auth_token(user_id=user.id, telegram_id=user.telegram_id)
    return {"Authorization": f"Bearer {token}"}


def _build(engine: AsyncEngine) -> tuple[AsyncClient, NotificationDispatcher]:
    dispatcher = NotificationDispatcher(build_session_maker(engine))
    app = create_app(engine=engine, rate_limiter=InMemoryRateLimiter(), dispatcher=dispatcher)
    client = AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
    return client, dispatcher


def _task_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "title": "Landing page copy",
        "description": "Three sections, friendly tone.",
        "budget": 1500,
        "category": "copywriting",
        "tags": ["marketing", "web"],
    }
    body.update(overrides)
    return body


def _proposal_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {"price": 1200, "comment": "Draft in two days.", "eta_days": 2}
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_health_endpoints_are_public() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        async with client:
            for path in ("/health", "/healthz", "/readyz"):
                resp = await client.get(path)
                assert resp.status_code == 200
                assert resp.json() == {"ok": True}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_requests_without_bearer_token_are_unauthorized() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        async with client:
            resp = await client.get("/api/v1/tasks")
            assert resp.status_code == 401
            assert resp.json()["error"]["code"] == "UNAUTHORIZED"

            resp = await client.get(
                "/api/v1/tasks",
                headers={"Authorization": "Bearer not-a-jwt"},
            )
            assert resp.status_code == 401
            assert resp.json()["error"]["message"] == "Invalid auth token."
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_blocked_user_is_forbidden() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        blocked = await _seed_user(engine, "blocked", is_blocked=True)
        async with client:
            resp = await client.get("/api/v1/tasks", headers=_headers(blocked))
        assert resp.status_code == 403
        assert resp.json()["error"] == {
            "code": "FORBIDDEN",
            "message": "User is blocked.",
            "details": {"request_id": resp.headers["X-Request-Id"]},
        }
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_full_marketplace_flow_over_http() -> None:
    engine = await _make_engine()
    client, dispatcher = _build(engine)
    try:
        customer = await _seed_user(engine, "customer")
        executor = await _seed_user(engine, "executor")
        as_customer = _headers(customer)
        as_executor = _headers(executor)

        async with client:
            created = await client.post("/api/v1/tasks", json=_task_body(), headers=as_customer)
            assert created.status_code == 201
            task = created.json()["task"]
            assert task["status"] == "OPEN"
            assert task["budget"] == 1500
            assert task["customer"]["id"] == str(customer.id)
            assert task["assignment"] is None
            task_id = task["id"]

            edited = await client.patch(
                f"/api/v1/tasks/{task_id}",
                json={"title": "Landing page copy v2"},
                headers=as_customer,
            )
            assert edited.status_code == 200
            assert edited.json()["task"]["title"] == "Landing page copy v2"
            assert edited.json()["task"]["description"] == "Three sections, friendly tone."

            feed = await client.get("/api/v1/tasks", headers=as_executor)
            assert feed.status_code == 200
            assert [item["id"] for item in feed.json()["items"]] == [task_id]
            assert feed.json()["pagination"] == {
                "page": 1,
                "limit": 20,
                "total": 1,
                "total_pages": 1,
            }

            proposed = await client.post(
                f"/api/v1/tasks/{task_id}/proposals",
                json=_proposal_body(),
                headers=as_executor,
            )
            assert proposed.status_code == 201
            proposal = proposed.json()["proposal"]
            assert proposal["executor"]["id"] == str(executor.id)

            duplicate = await client.post(
                f"/api/v1/tasks/{task_id}/proposals",
                json=_proposal_body(price=900),
                headers=as_executor,
            )
            assert duplicate.status_code == 400
            assert duplicate.json()["error"]["message"] == (
                "Only one proposal per executor is allowed for a task."
            )

            selected = await client.post(
                f"/api/v1/tasks/{task_id}/select-proposal",
                json={"proposal_id": proposal["id"]},
                headers=as_customer,
            )
            assert selected.status_code == 200
            assert selected.json()["task"]["status"] == "IN_PROGRESS"
            assert selected.json()["task"]["assignment"]["executor_id"] == str(executor.id)

            said = await client.post(
                f"/api/v1/tasks/{task_id}/messages",
                json={"text": "Started working"},
                headers=as_executor,
            )
            assert said.status_code == 201
            assert said.json()["message"]["sender"]["id"] == str(executor.id)

            review = await client.post(
                f"/api/v1/tasks/{task_id}/send-to-review",
                headers=as_executor,
            )
            assert review.json()["task"]["status"] == "ON_REVIEW"

            rejected = await client.post(
                f"/api/v1/tasks/{task_id}/reject-review",
                json={"comment": "Shorter intro please"},
                headers=as_customer,
            )
            assert rejected.json()["task"]["status"] == "IN_PROGRESS"

            await client.post(f"/api/v1/tasks/{task_id}/send-to-review", headers=as_executor)
            approved = await client.post(f"/api/v1/tasks/{task_id}/approve", headers=as_customer)
            assert approved.status_code == 200
            assert approved.json()["task"]["status"] == "COMPLETED"

            history = await client.get(
                f"/api/v1/tasks/{task_id}/status-history",
                headers=as_executor,
            )
            assert [row["to_status"] for row in history.json()["items"]] == [
                "COMPLETED",
                "ON_REVIEW",
                "IN_PROGRESS",
                "ON_REVIEW",
                "IN_PROGRESS",
                "OPEN",
            ]
            assert history.json()["items"][-1]["changed_by_user"]["id"] == str(customer.id)

            messages = await client.get(f"/api/v1/tasks/{task_id}/messages", headers=as_customer)
            assert [m["text"] for m in messages.json()["items"]] == ["Started working"]

            await dispatcher.drain()

            customer_inbox = await client.get("/api/v1/notifications", headers=as_customer)
            assert {item["type"] for item in customer_inbox.json()["items"]} == {
                "PROPOSAL_CREATED",
                "TASK_SENT_TO_REVIEW",
            }
            executor_inbox = await client.get("/api/v1/notifications", headers=as_executor)
            assert {item["type"] for item in executor_inbox.json()["items"]} == {
                "EXECUTOR_SELECTED",
                "TASK_REJECTED",
                "TASK_APPROVED",
            }
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_task_creation_is_rate_limited_per_user() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        customer = await _seed_user(engine, "customer")
        other = await _seed_user(engine, "other")
        async with client:
            for _ in range(5):
                resp = await client.post(
                    "/api/v1/tasks",
                    json=_task_body(),
                    headers=_headers(customer),
                )
                assert resp.status_code == 201

            limited = await client.post("/api/v1/tasks", json=_task_body(), headers=_headers(customer))
            assert limited.status_code == 429
            assert int(limited.headers["Retry-After"]) >= 1
            assert limited.json()["error"]["code"] == "RATE_LIMITED"

            allowed = await client.post("/api/v1/tasks", json=_task_body(), headers=_headers(other))
            assert allowed.status_code == 201
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_invalid_bodies_and_queries_are_validation_errors() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        customer = await _seed_user(engine, "customer")
        headers = _headers(customer)
        async with client:
            negative = await client.post(
                "/api/v1/tasks",
                json=_task_body(budget=-5),
                headers=headers,
            )
            assert negative.status_code == 400
            assert negative.json()["error"]["details"]["field"] == "budget"

            missing = await client.post("/api/v1/tasks", json={"title": "x"}, headers=headers)
            assert missing.status_code == 400
            assert missing.json()["error"]["code"] == "VALIDATION_ERROR"

            bad_sort = await client.get("/api/v1/tasks?sort=sideways", headers=headers)
            assert bad_sort.status_code == 400

            bad_page = await client.get("/api/v1/tasks?page=0", headers=headers)
            assert bad_page.status_code == 400

            bad_status = await client.get("/api/v1/proposals/my?status=DONE", headers=headers)
            assert bad_status.status_code == 400
            assert bad_status.json()["error"]["details"]["field"] == "status"

            unknown = await client.get(f"/api/v1/tasks/{uuid4()}", headers=headers)
            assert unknown.status_code == 404
            assert unknown.json()["error"]["message"] == "Task not found."
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_proposal_edit_withdraw_and_my_proposals() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        customer = await _seed_user(engine, "customer")
        executor = await _seed_user(engine, "executor")
        stranger = await _seed_user(engine, "stranger")
        async with client:
            task_id = (
                await client.post("/api/v1/tasks", json=_task_body(), headers=_headers(customer))
            ).json()["task"]["id"]
            proposal_id = (
                await client.post(
                    f"/api/v1/tasks/{task_id}/proposals",
                    json=_proposal_body(),
                    headers=_headers(executor),
                )
            ).json()["proposal"]["id"]

            hidden = await client.get(
                f"/api/v1/tasks/{task_id}/proposals",
                headers=_headers(stranger),
            )
            assert hidden.status_code == 403

            patched = await client.patch(
                f"/api/v1/proposals/{proposal_id}",
                json={"eta_days": 5},
                headers=_headers(executor),
            )
            assert patched.status_code == 200
            assert patched.json()["proposal"]["eta_days"] == 5

            mine = await client.get("/api/v1/proposals/my", headers=_headers(executor))
            assert mine.status_code == 200
            (item,) = mine.json()["items"]
            assert item["task"]["id"] == task_id
            assert item["task"]["customer"]["id"] == str(customer.id)
            assert mine.json()["pagination"]["total"] == 1

            withdrawn = await client.delete(
                f"/api/v1/proposals/{proposal_id}",
                headers=_headers(executor),
            )
            assert withdrawn.status_code == 204
            assert withdrawn.content == b""

            owner_view = await client.get(
                f"/api/v1/tasks/{task_id}/proposals",
                headers=_headers(customer),
            )
            assert owner_view.json()["items"] == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_chat_is_private_to_task_participants() -> None:
    engine = await _make_engine()
    client, _ = _build(engine)
    try:
        customer = await _seed_user(engine, "customer")
        executor = await _seed_user(engine, "executor")
        stranger = await _seed_user(engine, "stranger")
        async with client:
            task_id = (
                await client.post("/api/v1/tasks", json=_task_body(), headers=_headers(customer))
            ).json()["task"]["id"]

            closed = await client.get(
                f"/api/v1/tasks/{task_id}/messages",
                headers=_headers(customer),
            )
            assert closed.status_code == 403

            proposal_id = (
                await client.post(
                    f"/api/v1/tasks/{task_id}/proposals",
                    json=_proposal_body(),
                    headers=_headers(executor),
                )
            ).json()["proposal"]["id"]
            await client.post(
                f"/api/v1/tasks/{task_id}/select-proposal",
                json={"proposal_id": proposal_id},
                headers=_headers(customer),
            )

            outsider = await client.post(
                f"/api/v1/tasks/{task_id}/messages",
                json={"text": "hi"},
                headers=_headers(stranger),
            )
            assert outsider.status_code == 403
            assert outsider.json()["error"]["message"] == (
                "Only task customer and assigned executor can access chat."
            )

            too_many = await client.get(
                f"/api/v1/tasks/{task_id}/messages?limit=500",
                headers=_headers(customer),
            )
            assert too_many.status_code == 400
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_notification_inbox_read_flags() -> None:
    engine = await _make_engine()
    client, dispatcher = _build(engine)
    try:
        customer = await _seed_user(engine, "customer")
        first = await _seed_user(engine, "first")
        second = await _seed_user(engine, "second")
        async with client:
            task_id = (
                await client.post("/api/v1/tasks", json=_task_body(), headers=_headers(customer))
            ).json()["task"]["id"]
            for bidder in (first, second):
                await client.post(
                    f"/api/v1/tasks/{task_id}/proposals",
                    json=_proposal_body(),
                    headers=_headers(bidder),
                )
            await dispatcher.drain()

            inbox = await client.get("/api/v1/notifications", headers=_headers(customer))
            body = inbox.json()
            assert body["unread_count"] == 2
            assert body["pagination"]["total"] == 2
            assert all(item["payload"]["task_id"] == task_id for item in body["items"])

            first_id = body["items"][0]["id"]
            read = await client.post(
                f"/api/v1/notifications/{first_id}/read",
                headers=_headers(customer),
            )
            assert read.status_code == 200
            assert read.json()["notification"]["is_read"] is True
            assert read.json()["notification"]["read_at"] is not None

            not_mine = await client.post(
                f"/api/v1/notifications/{first_id}/read",
                headers=_headers(first),
            )
            assert not_mine.status_code == 404

            read_all = await client.post(
                "/api/v1/notifications/read-all",
                headers=_headers(customer),
            )
            assert read_all.json() == {"updated_count": 1}

            inbox = await client.get("/api/v1/notifications", headers=_headers(customer))
            assert inbox.json()["unread_count"] == 0
    finally:
        await engine.dispose()
