from __future__ import annotations

import logging
from dataclasses import dataclass

import requests

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelegramNotifier:
    """Best-effort Telegram alerts. A failed send is logged and otherwise ignored."""

    bot_token: str
    chat_id: str
    timeout_s: int = 10

    BASE_URL = "https://api.telegram.org"

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    def send(self, text: str) -> bool:
        if not self.enabled:
            return False
        url = f"{self.BASE_URL}/bot{self.bot_token}/sendMessage"
        try:
            resp = requests.post(
                url,
                json={"chat_id": self.chat_id, "text": text, "disable_web_page_preview": True},
                timeout=self.timeout_s,
            )
        except requests.exceptions.RequestException as e:
            logger.warning("telegram send failed: %s", e)
            return False
        if resp.status_code >= 400:
            logger.warning("telegram send failed: HTTP %s %s", resp.status_code, resp.text[:200])
            return False
        return True
