import time
import asyncio
import logging
from typing import Dict, Optional, Set

import requests

logger = logging.getLogger("Liquidator")

# Anti-spam window for repeated non-urgent messages
REPEAT_COOLDOWN = 300


class Notifier:
    """
    Fire-and-forget alerts to Discord and Telegram.

    `notify` schedules delivery and returns immediately; nothing it does can
    raise into the caller.
    """

    def __init__(self, discord_webhook: Optional[str] = None, telegram_token: Optional[str] = None,
                 telegram_chat_id: Optional[str] = None, username: str = "⚡ Liquidator",
                 cooldown: float = REPEAT_COOLDOWN):
        self.discord_webhook = discord_webhook
        self.telegram_token = telegram_token
        self.telegram_chat_id = telegram_chat_id
        self.username = username
        self.cooldown = cooldown
        self._last_sent: Dict[str, float] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.discord_webhook or (self.telegram_token and self.telegram_chat_id))

    def _throttled(self, title: str, body: str) -> bool:
        key = (title + body)[:100]
        now = time.time()
        if key in self._last_sent and now - self._last_sent[key] < self.cooldown:
            return True
        self._last_sent = {k: t for k, t in self._last_sent.items() if now - t < self.cooldown}
        self._last_sent[key] = now
        return False

    def notify(self, title: str, body: str, urgent: bool = False):
        try:
            if not self.enabled:
                return
            if not urgent and self._throttled(title, body):
                return
            task = asyncio.get_running_loop().create_task(self._deliver(title, body, urgent))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        except Exception as e:
            logger.debug(f"Notification dropped: {e}")

    async def _deliver(self, title: str, body: str, urgent: bool):
        sends = []
        if self.discord_webhook:
            sends.append(self._post(self.discord_webhook, self.discord_payload(title, body, urgent)))
        if self.telegram_token and self.telegram_chat_id:
            url = f"https://api.telegram.org/bot{self.telegram_token}/sendMessage"
            sends.append(self._post(url, self.telegram_payload(title, body)))
        await asyncio.gather(*sends, return_exceptions=True)

    async def _post(self, url: str, payload: dict):
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: requests.post(url, json=payload, timeout=10))
        except Exception as e:
            logger.debug(f"Alert delivery failed: {e}")

    def discord_payload(self, title: str, body: str, urgent: bool) -> dict:
        color = 0x00ff00 if urgent else 0xffaa00
        return {
            "content": "@here " + title if urgent else title,
            "username": self.username,
            "embeds": [{"title": title, "description": body, "color": color}],
        }

    def telegram_payload(self, title: str, body: str) -> dict:
        return {"chat_id": self.telegram_chat_id, "text": f"<b>{title}</b>\n{body}", "parse_mode": "HTML"}

    async def drain(self):
        """Waits for in-flight deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
