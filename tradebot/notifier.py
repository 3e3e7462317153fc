from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from tradebot.config import TelegramConfig
from tradebot.errors import RequestError
from tradebot.requester import Requester, RequestSpec


log = logging.getLogger(__name__)

TELEGRAM_ENDPOINT = "telegram"


class Notifier(ABC):
    @abstractmethod
    async def send(self, text: str) -> bool:
        """Deliver one message. Never raises; False when delivery failed."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class LogNotifier(Notifier):
    async def send(self, text: str) -> bool:
        log.info("Notification:\n%s", text)
        return True


class TelegramNotifier(Notifier):
    def __init__(self, cfg: TelegramConfig, requester: Requester):
        if not cfg.bot_token or not cfg.chat_id:
            raise ValueError("Telegram bot token and chat id are required")
        self._cfg = cfg
        self._requester = requester
        self._url = f"{cfg.base_url.rstrip('/')}/bot{cfg.bot_token}/sendMessage"

    async def send(self, text: str) -> bool:
        spec = RequestSpec(
            method="POST",
            url=self._url,
            json={
                "chat_id": self._cfg.chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            },
        )
        try:
            body = await self._requester.execute(TELEGRAM_ENDPOINT, spec)
        except RequestError as e:
            # The token is part of the URL; report the cause only.
            log.error("Telegram notification failed after %d attempt(s): %s", e.attempts, type(e.last_cause).__name__)
            return False
        if isinstance(body, dict) and body.get("ok") is False:
            log.error("Telegram rejected notification: %s", body.get("description"))
            return False
        log.debug("Telegram notification sent")
        return True
