import asyncio
import logging
import time

import requests

from keeper_config import TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

logger = logging.getLogger("ZapKeeper")

ALERT_COOLDOWN = 300  # 5 minutes


class TelegramAlerter:
    """HTML Telegram alerts with anti-spam cooldown for repeated errors."""

    def __init__(self, bot_token=TELEGRAM_BOT_TOKEN, chat_id=TELEGRAM_CHAT_ID, cooldown=ALERT_COOLDOWN):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.cooldown = cooldown
        self._last_errors = {}

    @property
    def enabled(self):
        return bool(self.bot_token and self.chat_id)

    def should_send(self, msg, is_error=False):
        if not self.enabled:
            return False
        if is_error:
            error_key = msg[:100]
            now = time.time()
            if error_key in self._last_errors and (now - self._last_errors[error_key]) < self.cooldown:
                return False
            self._last_errors[error_key] = now
        return True

    def post(self, msg):
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": msg, "parse_mode": "HTML"}
        resp = requests.post(url, json=payload, timeout=10)
        resp.raise_for_status()

    async def send(self, msg, is_error=False):
        """Sends without blocking the event loop; failures are only logged."""
        if not self.should_send(msg, is_error):
            return False
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.post, msg)
            return True
        except Exception as e:
            logger.warning(f"⚠️ Telegram alert failed: {e}")
            return False
