from __future__ import annotations

import asyncio
import logging

import httpx

from .errors import NotificationFailure
from .formatting import format_alert_chat_message
from .types import AlertNotification

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Posts triggered alerts into one operator chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        timeout: float = 15.0,
        retries: int = 4,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.chat_id = chat_id
        self.retries = retries
        self._url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def notify(self, notification: AlertNotification) -> None:
        await self.send(format_alert_chat_message(notification))

    async def send(self, text: str) -> None:
        delay = 1.0

        for attempt in range(self.retries):
            try:
                response = await self._client.post(
                    self._url,
                    json={
                        "chat_id": self.chat_id,
                        "text": text,
                        "parse_mode": "HTML",
                        "disable_web_page_preview": True,
                    },
                )

                if response.status_code == 429:
                    retry_after = _retry_after(response, default=2.0)
                    logger.warning("Telegram rate limited. Sleeping %.1fs", retry_after)
                    await asyncio.sleep(retry_after)
                    continue

                response.raise_for_status()
                data = response.json()
                if not data.get("ok", False):
                    raise NotificationFailure(f"Telegram send failed: {data}")
                return
            except (httpx.HTTPError, ValueError, NotificationFailure) as exc:
                if attempt == self.retries - 1:
                    raise NotificationFailure(f"Telegram send failed: {exc}") from exc
                logger.warning("Telegram send attempt %d failed: %s", attempt + 1, exc)
                await asyncio.sleep(delay)
                delay *= 2

        raise NotificationFailure(f"Telegram still rate limited after {self.retries} attempts")


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        payload = response.json()
        return float(payload.get("parameters", {}).get("retry_after", default))
    except (ValueError, AttributeError, TypeError):
        return default
