"""In-process post-commit notification queue and worker.

Request handlers publish envelopes only after their transaction commits.
A single worker task drains the queue, routing each envelope by task type.
Handler failures are logged and retried with capped exponential backoff;
nothing raised here ever reaches the request that published the work.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace.core.logging import get_logger
from marketplace.models.notifications import Notification
from marketplace.models.users import User
from marketplace.services.notifications.queue import (
    DELIVER_TASK_TYPE,
    PERSIST_TASK_TYPE,
    NotificationEvent,
    QueuedTask,
    decode_notification_task,
    deliver_task,
    persist_task,
)
from marketplace.services.notifications.telegram import TelegramBotClient, build_message

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from marketplace.core.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class _TaskHandler:
    handler: Callable[[QueuedTask], Awaitable[None]]


class NotificationDispatcher:
    """Bounded ``asyncio.Queue`` with one consumer task."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        telegram: TelegramBotClient | None = None,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        max_queue_size: int = 0,
        drain_timeout_seconds: float | None = 10.0,
    ) -> None:
        self._session_maker = session_maker
        self._telegram = telegram
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._drain_timeout_seconds = drain_timeout_seconds
        self._queue: asyncio.Queue[QueuedTask] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: asyncio.Task[None] | None = None
        self._retries: set[asyncio.Task[None]] = set()
        self._handlers: dict[str, _TaskHandler] = {
            PERSIST_TASK_TYPE: _TaskHandler(handler=self._persist),
            DELIVER_TASK_TYPE: _TaskHandler(handler=self._deliver),
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_maker: async_sessionmaker[AsyncSession],
    ) -> NotificationDispatcher:
        return cls(
            session_maker,
            telegram=TelegramBotClient.from_settings(settings),
            max_retries=settings.notification_max_retries,
            retry_base_seconds=settings.notification_retry_base_seconds,
            retry_max_seconds=settings.notification_retry_max_seconds,
            max_queue_size=settings.notification_queue_max_size,
            drain_timeout_seconds=settings.notification_drain_timeout_seconds,
        )

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def publish(self, task: QueuedTask) -> bool:
        """Enqueue without awaiting; returns False when the envelope was dropped."""
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            logger.warning(
                "notification.dispatch.queue_full",
                extra={"task_type": task.task_type, "queue_size": self._queue.qsize()},
            )
            return False
        logger.debug(
            "notification.dispatch.enqueued",
            extra={"task_type": task.task_type, "attempt": task.attempts},
        )
        return True

    def notify(self, event: NotificationEvent) -> bool:
        """Store the in-app notification, then push it to the bot."""
        return self.publish(persist_task(event))

    def push(self, event: NotificationEvent) -> bool:
        """Push an already-stored notification to the bot."""
        return self.publish(deliver_task(event))

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info("notification.dispatch.started")

    async def drain(self) -> None:
        """Wait until the queue and every scheduled retry have settled."""
        while True:
            if self.running:
                await self._queue.join()
            else:
                await self.process_pending()
            if not self._retries:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*self._retries, return_exceptions=True)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the worker, draining first for at most ``drain_timeout_seconds``.

        Retries still sleeping when the timeout expires are cancelled and their
        envelopes are lost.
        """
        if drain:
            try:
                await asyncio.wait_for(self.drain(), timeout=self._drain_timeout_seconds)
            except TimeoutError:
                logger.warning(
                    "notification.dispatch.drain_timeout",
                    extra={
                        "timeout_seconds": self._drain_timeout_seconds,
                        "queued": self._queue.qsize(),
                        "pending_retries": len(self._retries),
                    },
                )
        retries = list(self._retries)
        for retry in retries:
            retry.cancel()
        await asyncio.gather(*retries, return_exceptions=True)
        if self._worker is not None:
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
        logger.info("notification.dispatch.stopped")

    async def process_pending(self) -> int:
        """Handle every queued envelope inline; used when no worker is running."""
        processed = 0
        while not self._queue.empty():
            task = self._queue.get_nowait()
            try:
                await self._dispatch(task)
                processed += 1
            finally:
                self._queue.task_done()
        return processed

    async def _run(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self._dispatch(task)
            finally:
                self._queue.task_done()

    async def _dispatch(self, task: QueuedTask) -> None:
        handler = self._handlers.get(task.task_type)
        if handler is None:
            logger.warning(
                "notification.dispatch.task_unhandled",
                extra={"task_type": task.task_type},
            )
            return
        try:
            await handler.handler(task)
        except Exception as exc:
            logger.exception(
                "notification.dispatch.failed",
                extra={
                    "task_type": task.task_type,
                    "attempt": task.attempts,
                    "error": str(exc),
                },
            )
            self._requeue_if_failed(task)

    def _retry_delay(self, attempts: int) -> float:
        base = min(
            self._retry_base_seconds * (2 ** max(0, attempts)),
            self._retry_max_seconds,
        )
        return base + random.uniform(0, base * 0.1)

    def _requeue_if_failed(self, task: QueuedTask) -> bool:
        retried = task.with_attempt()
        if retried.attempts > self._max_retries:
            logger.warning(
                "notification.dispatch.drop_task",
                extra={"task_type": task.task_type, "attempts": retried.attempts},
            )
            return False
        delay = self._retry_delay(task.attempts)
        retry = asyncio.create_task(self._publish_later(retried, delay))
        self._retries.add(retry)
        retry.add_done_callback(self._retries.discard)
        return True

    async def _publish_later(self, task: QueuedTask, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        self.publish(task)

    async def _persist(self, task: QueuedTask) -> None:
        event = decode_notification_task(task)
        async with self._session_maker() as session:
            session.add(
                Notification(
                    user_id=event.user_id,
                    type=event.type,
                    title=event.title,
                    body=event.body,
                    payload={"task_id": str(event.task_id), **event.payload},
                ),
            )
            await session.commit()
        logger.info(
            "notification.persisted",
            extra={"type": event.type, "user_id": str(event.user_id)},
        )
        if task.payload.get("deliver", True):
            self.push(event)

    async def _deliver(self, task: QueuedTask) -> None:
        telegram = self._telegram
        if telegram is None or not telegram.is_configured:
            return
        event = decode_notification_task(task)
        async with self._session_maker() as session:
            user = await User.objects.by_id(event.user_id).first(session)
        if user is None or user.is_blocked or not user.bot_notifications_enabled:
            logger.debug(
                "notification.telegram.skipped",
                extra={"type": event.type, "user_id": str(event.user_id)},
            )
            return
        await telegram.send_message(
            chat_id=user.telegram_id,
            text=build_message(
                event.title,
                event.body,
                task_id=event.task_id,
                bot_username=telegram.bot_username,
            ),
        )
        logger.info(
            "notification.telegram.delivered",
            extra={"type": event.type, "user_id": str(event.user_id)},
        )
