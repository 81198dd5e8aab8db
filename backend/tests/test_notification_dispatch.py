# ruff: noqa: INP001
"""Post-commit notification dispatcher and Telegram delivery tests."""

from __future__ import annotations

import asyncio
import json
from itertools import count
from uuid import uuid4

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel, col
from sqlmodel.ext.asyncio.session import AsyncSession

from marketplace.db.session import build_session_maker
from marketplace.models.notifications import Notification, NotificationType
from marketplace.models.users import User
from marketplace.services.notifications import NotificationDispatcher, QueuedTask
from marketplace.services.notifications.queue import (
    PERSIST_TASK_TYPE,
    NotificationEvent,
    decode_notification_task,
    persist_task,
)
from marketplace.services.notifications.telegram import (
    TelegramBotClient,
    TelegramDeliveryError,
    build_message,
    build_task_deep_link,
)
from marketplace.services.notifications.templates import build_event

_TELEGRAM_IDS = count(777_000)


class _FakeTelegram:
    """Records Bot API calls; answers with the configured status codes in order."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses) or [200]
        self.requests: list[dict[str, object]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({"url": str(request.url), "json": json.loads(request.content)})
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if status >= 400:
            return httpx.Response(status, json={"ok": False, "description": "boom"})
        return httpx.Response(status, json={"ok": True, "result": {}})

    def client(self, *, bot_username: str = "market_bot") -> TelegramBotClient:
        return TelegramBotClient(
            token="123:abc",
            bot_username=bot_username,
            api_url="https://telegram.test",
            transport=httpx.MockTransport(self.handler),
        )


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


async def _seed_user(engine: AsyncEngine, **overrides: object) -> User:
    async with AsyncSession(engine, expire_on_commit=False) as session:
        user = User(telegram_id=next(_TELEGRAM_IDS), display_name="Recipient", **overrides)
        session.add(user)
        await session.commit()
        return user


def _event(user: User) -> NotificationEvent:
    return build_event(
        NotificationType.EXECUTOR_SELECTED,
        user_id=user.id,
        task_id=uuid4(),
        task_title="Logo redesign",
    )


def test_message_text_includes_deep_link_only_with_bot_username() -> None:
    task_id = uuid4()
    assert build_task_deep_link("@market_bot", task_id) == (
        f"https://t.me/market_bot?startapp=task_{task_id}"
    )
    assert build_task_deep_link("  ", task_id) is None
    assert build_message("Title", "Body", task_id=task_id, bot_username="") == "Title\n\nBody"
    assert build_message("Title", "Body", task_id=task_id, bot_username="market_bot").endswith(
        f"\n\nOpen task: https://t.me/market_bot?startapp=task_{task_id}",
    )


def test_envelope_roundtrip_keeps_event_fields() -> None:
    user_id = uuid4()
    event = build_event(
        NotificationType.TASK_REJECTED,
        user_id=user_id,
        task_id=uuid4(),
        task_title="Logo",
        payload={"comment": "again"},
    )
    envelope = persist_task(event, deliver=False)
    assert envelope.task_type == PERSIST_TASK_TYPE
    assert envelope.payload["deliver"] is False
    assert decode_notification_task(envelope) == event
    assert event.body == 'The customer returned "Logo" to work.'

    with pytest.raises(ValueError, match="Unexpected task_type"):
        decode_notification_task(QueuedTask(task_type="other", payload={}))


@pytest.mark.asyncio
async def test_notify_persists_then_delivers_to_telegram() -> None:
    engine = await _make_engine()
    fake = _FakeTelegram()
    dispatcher = NotificationDispatcher(build_session_maker(engine), telegram=fake.client())
    try:
        user = await _seed_user(engine)
        event = _event(user)
        assert dispatcher.notify(event) is True
        await dispatcher.drain()

        async with AsyncSession(engine) as session:
            rows = await Notification.objects.filter(
                col(Notification.user_id) == user.id,
            ).all(session)
        assert [row.type for row in rows] == [NotificationType.EXECUTOR_SELECTED.value]
        assert rows[0].is_read is False
        assert rows[0].payload == {"task_id": str(event.task_id)}

        assert len(fake.requests) == 1
        sent = fake.requests[0]
        assert sent["url"] == "https://telegram.test/bot123:abc/sendMessage"
        body = sent["json"]
        assert isinstance(body, dict)
        assert body["chat_id"] == str(user.telegram_id)
        assert body["text"].startswith("You were selected as executor\n\n")
        assert f"startapp=task_{event.task_id}" in body["text"]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"is_blocked": True}, {"bot_notifications_enabled": False}],
)
async def test_delivery_skips_blocked_or_opted_out_recipients(overrides: dict[str, bool]) -> None:
    engine = await _make_engine()
    fake = _FakeTelegram()
    dispatcher = NotificationDispatcher(build_session_maker(engine), telegram=fake.client())
    try:
        user = await _seed_user(engine, **overrides)
        dispatcher.push(_event(user))
        await dispatcher.drain()
        assert fake.requests == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delivery_skips_without_token_or_recipient() -> None:
    engine = await _make_engine()
    fake = _FakeTelegram()
    unconfigured = TelegramBotClient(token=" ", transport=httpx.MockTransport(fake.handler))
    try:
        user = await _seed_user(engine)
        no_token = NotificationDispatcher(build_session_maker(engine), telegram=unconfigured)
        no_token.push(_event(user))
        await no_token.drain()

        configured = NotificationDispatcher(build_session_maker(engine), telegram=fake.client())
        configured.push(
            build_event(
                NotificationType.TASK_APPROVED,
                user_id=uuid4(),
                task_id=uuid4(),
                task_title="Ghost",
            ),
        )
        await configured.drain()
        assert fake.requests == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_up_to_the_cap_then_dropped() -> None:
    engine = await _make_engine()
    fake = _FakeTelegram(500)
    dispatcher = NotificationDispatcher(
        build_session_maker(engine),
        telegram=fake.client(),
        max_retries=2,
        retry_base_seconds=0,
        retry_max_seconds=0,
    )
    try:
        user = await _seed_user(engine)
        dispatcher.push(_event(user))
        await dispatcher.drain()
        # First attempt plus two retries.
        assert len(fake.requests) == 3
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry() -> None:
    engine = await _make_engine()
    fake = _FakeTelegram(502, 200)
    dispatcher = NotificationDispatcher(
        build_session_maker(engine),
        telegram=fake.client(),
        retry_base_seconds=0,
        retry_max_seconds=0,
    )
    try:
        user = await _seed_user(engine)
        dispatcher.push(_event(user))
        await dispatcher.drain()
        assert len(fake.requests) == 2
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_send_message_raises_delivery_error_on_api_error() -> None:
    fake = _FakeTelegram(403)
    with pytest.raises(TelegramDeliveryError, match="Telegram API 403"):
        await fake.client().send_message(chat_id=42, text="hi")


@pytest.mark.asyncio
async def test_publish_never_raises_when_queue_is_full() -> None:
    engine = await _make_engine()
    dispatcher = NotificationDispatcher(build_session_maker(engine), max_queue_size=1)
    try:
        user = await _seed_user(engine)
        assert dispatcher.push(_event(user)) is True
        assert dispatcher.push(_event(user)) is False
        assert await dispatcher.process_pending() == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_unknown_task_type_is_ignored() -> None:
    engine = await _make_engine()
    dispatcher = NotificationDispatcher(build_session_maker(engine))
    try:
        dispatcher.publish(QueuedTask(task_type="webhook.delivery", payload={}))
        assert await dispatcher.process_pending() == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_worker_lifecycle_drains_pending_work_on_stop() -> None:
    engine = await _make_engine()
    fake = _FakeTelegram()
    dispatcher = NotificationDispatcher(build_session_maker(engine), telegram=fake.client())
    try:
        user = await _seed_user(engine)
        dispatcher.start()
        assert dispatcher.running
        dispatcher.notify(_event(user))
        await dispatcher.stop(drain=True)
        assert not dispatcher.running
        assert len(fake.requests) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_stop_gives_up_on_sleeping_retries_after_drain_timeout() -> None:
    engine = await _make_engine()
    fake = _FakeTelegram(500)
    dispatcher = NotificationDispatcher(
        build_session_maker(engine),
        telegram=fake.client(),
        retry_base_seconds=30,
        retry_max_seconds=30,
        drain_timeout_seconds=0.1,
    )
    try:
        user = await _seed_user(engine)
        dispatcher.push(_event(user))
        assert await dispatcher.process_pending() == 1
        # The first attempt failed; its retry is now sleeping for 30s.
        assert len(fake.requests) == 1

        await asyncio.wait_for(dispatcher.stop(drain=True), timeout=5)
        assert not dispatcher.running
        assert len(fake.requests) == 1
    finally:
        await engine.dispose()
