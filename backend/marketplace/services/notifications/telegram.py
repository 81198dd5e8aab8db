"""Telegram Bot API delivery for notification pushes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx

from marketplace.core.config import Settings
from marketplace.core.logging import get_logger

if TYPE_CHECKING:
    from uuid import UUID

logger = get_logger(__name__)


class TelegramDeliveryError(RuntimeError):
    """Raised when the Bot API rejects or fails a send."""


def build_task_deep_link(bot_username: str, task_id: UUID | str) -> str | None:
    """Mini-app link that opens ``task_id``, or ``None`` without a bot username."""
    username = bot_username.strip().lstrip("@")
    if not username:
        return None
    return f"https://t.me/{username}?startapp={quote(f'task_{task_id}', safe='')}"


def build_message(title: str, body: str, *, task_id: UUID | str, bot_username: str) -> str:
    deep_link = build_task_deep_link(bot_username, task_id)
    if deep_link:
        return f"{title}\n\n{body}\n\nOpen task: {deep_link}"
    return f"{title}\n\n{body}"


@dataclass
class TelegramBotClient:
    """Minimal async ``sendMessage`` client."""

    token: str
    bot_username: str = ""
    api_url: str = "https://api.telegram.org"
    timeout_seconds: float = 10.0
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> TelegramBotClient:
        return cls(
            token=settings.telegram_bot_token,
            bot_username=settings.telegram_bot_username,
            api_url=settings.telegram_api_url,
            timeout_seconds=settings.telegram_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.token.strip())

    async def send_message(self, *, chat_id: int, text: str) -> None:
        url = f"{self.api_url.rstrip('/')}/bot{self.token.strip()}/sendMessage"
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self.transport,
        ) as client:
            try:
                response = await client.post(
                    url,
                    json={
                        "chat_id": str(chat_id),
                        "text": text,
                        "disable_web_page_preview": True,
                    },
                )
            except httpx.HTTPError as exc:
                raise TelegramDeliveryError(f"Telegram API request failed: {exc}") from exc
        if response.is_error:
            msg = f"Telegram API {response.status_code}: {response.text}"
            raise TelegramDeliveryError(msg)
        logger.debug("notification.telegram.sent", extra={"chat_id": chat_id})
