"""
Lightweight push notifications for position lifecycle events.

Delivers via the Join push API and/or a webhook (Telegram bot URL, Discord
webhook or any generic JSON endpoint). Delivery is best-effort: failures are
logged and never raised into the reconciliation cycle or the price monitor.

If nothing is configured, notifications are logged but not sent.
"""
from datetime import datetime, timezone
from typing import Dict, Optional

import aiohttp

from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)

JOIN_PUSH_URL = "https://joinjoaomgcd.appspot.com/_ah/api/messaging/v1/sendPush"


def _is_telegram(url: str) -> bool:
    return "api.telegram.org" in url


def _is_discord(url: str) -> bool:
    return "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url


class Notifier:
    """Best-effort notification sink: ``await notifier.notify(title, text)``."""

    def __init__(
        self,
        *,
        join_api_key: Optional[str] = None,
        join_device_id: Optional[str] = None,
        webhook_url: Optional[str] = None,
        chat_id: Optional[str] = None,
        enabled: bool = True,
        timeout_seconds: float = 10.0,
        min_interval_seconds: float = 0.0,
    ):
        self.join_api_key = (join_api_key or "").strip()
        self.join_device_id = (join_device_id or "").strip()
        self.webhook_url = (webhook_url or "").strip()
        self.chat_id = (chat_id or "").strip()
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        # Identical titles within this window are dropped (0 disables)
        self.min_interval_seconds = min_interval_seconds
        self._last_sent: Dict[str, datetime] = {}

    @classmethod
    def from_config(cls, config) -> "Notifier":
        n = config.notifications
        return cls(
            join_api_key=n.join_api_key,
            join_device_id=n.join_device_id,
            webhook_url=n.webhook_url,
            chat_id=n.chat_id,
            enabled=n.enabled,
            timeout_seconds=n.timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.join_api_key or self.webhook_url)

    async def notify(self, title: str, text: str) -> None:
        """Send a notification. Never raises."""
        if not self.enabled or not self.configured:
            logger.info("Notification (no sink configured)", title=title, text=text)
            return

        now = datetime.now(timezone.utc)
        if self.min_interval_seconds:
            last = self._last_sent.get(title)
            if last and (now - last).total_seconds() < self.min_interval_seconds:
                return
        self._last_sent[title] = now

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            ) as session:
                if self.join_api_key:
                    await self._send_join(session, title, text)
                if self.webhook_url:
                    await self._send_webhook(session, title, text, now)
        except Exception as e:
            # Notification failures must never reach the core
            logger.warning("Notification send failed (non-fatal)", title=title, error=str(e))

    async def _send_join(self, session: aiohttp.ClientSession, title: str, text: str) -> None:
        params = {
            "apikey": self.join_api_key,
            "title": title,
            "text": text,
            "deviceId": self.join_device_id,
        }
        async with session.get(JOIN_PUSH_URL, params=params) as resp:
            if resp.status >= 400:
                body = await resp.text()
                logger.warning("Join notification failed", status=resp.status, body=body[:200])
            else:
                logger.info("Join notification sent", title=title)

    async def _send_webhook(
        self, session: aiohttp.ClientSession, title: str, text: str, now: datetime
    ) -> None:
        formatted = f"[{title}] {now.strftime('%H:%M:%S UTC')}\n{text}"
        url = self.webhook_url
        if _is_telegram(url):
            payload = {"chat_id": self.chat_id, "text": formatted}
            ok_statuses = (200,)
        elif _is_discord(url):
            payload = {"content": formatted}
            ok_statuses = (200, 204)
        else:
            payload = {"title": title, "text": text, "timestamp": now.isoformat()}
            ok_statuses = None

        async with session.post(url, json=payload) as resp:
            failed = resp.status >= 400 if ok_statuses is None else resp.status not in ok_statuses
            if failed:
                body = await resp.text()
                logger.warning("Webhook notification failed", status=resp.status, body=body[:200])
