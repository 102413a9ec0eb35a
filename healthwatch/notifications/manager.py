"""Outage notifications — Slack and Telegram webhooks.

Subscribes to the event bus and fires on:
- outage confirmed (channel went offline)
- outage closed (channel recovered), with the real impact duration

A channel can be snoozed for a while to silence both. Webhook failures are
logged and never reach the monitor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import httpx

from healthwatch.config import settings
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.models import EventKind, MonitorEvent

logger = logging.getLogger(__name__)


class NotifyLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    RECOVERY = "recovery"


_EMOJI = {
    NotifyLevel.INFO: "ℹ️",
    NotifyLevel.WARNING: "⚠️",
    NotifyLevel.CRITICAL: "🔴",
    NotifyLevel.RECOVERY: "✅",
}


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "?"
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


class NotificationManager:
    """Central dispatcher for Slack / Telegram notifications."""

    def __init__(
        self,
        slack_webhook: str = "",
        telegram_token: str = "",
        telegram_chat_id: str = "",
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.slack_webhook = slack_webhook or settings.slack_webhook_url
        self.telegram_token = telegram_token or settings.telegram_bot_token
        self.telegram_chat_id = telegram_chat_id or settings.telegram_chat_id
        self._enabled = bool(self.slack_webhook or (self.telegram_token and self.telegram_chat_id))
        self._client = client or httpx.AsyncClient(timeout=10)
        self._clock = clock
        self._snoozed: dict[str, float] = {}

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def status(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "enabled": self._enabled,
            "slack_configured": bool(self.slack_webhook),
            "telegram_configured": bool(self.telegram_token and self.telegram_chat_id),
            "snoozed": {cid: until for cid, until in self._snoozed.items() if until > now},
        }

    # -- Snooze -------------------------------------------------------------

    def snooze(self, channel_id: str, duration_sec: float) -> float:
        """Silence a channel for ``duration_sec``. Returns when the snooze ends."""
        until = self._clock() + duration_sec
        self._snoozed[channel_id] = until
        logger.info("Notifications for %s snoozed for %.0fs", channel_id, duration_sec)
        return until

    def unsnooze(self, channel_id: str) -> bool:
        return self._snoozed.pop(channel_id, None) is not None

    def is_snoozed(self, channel_id: str) -> bool:
        until = self._snoozed.get(channel_id)
        if until is None:
            return False
        if until <= self._clock():
            del self._snoozed[channel_id]
            return False
        return True

    # -- Event handling -----------------------------------------------------

    def format_event(self, event: MonitorEvent) -> tuple[str, NotifyLevel] | None:
        """Message text and level for an event, or None if it is not notified."""
        data = event.data
        if event.kind == EventKind.OUTAGE_OPENED:
            level = NotifyLevel.CRITICAL
            text = (
                f"{_EMOJI[level]} *Outage*\n"
                f"Channel: `{event.channel_id}`\n"
                f"Reason: {data.get('reason', '?')}\n"
                f"Failures: {data.get('failure_count', '?')}\n"
            )
            return text, level
        if event.kind == EventKind.OUTAGE_CLOSED:
            level = NotifyLevel.RECOVERY
            text = (
                f"{_EMOJI[level]} *Recovered*\n"
                f"Channel: `{event.channel_id}`\n"
                f"Down for {format_duration(data.get('actual_duration'))} "
                f"(confirmed {format_duration(data.get('duration'))})\n"
            )
            return text, level
        return None

    async def handle_event(self, event: MonitorEvent) -> bool:
        """Notify for one event. Returns True if a message was dispatched."""
        formatted = self.format_event(event)
        if formatted is None:
            return False
        if self.is_snoozed(event.channel_id):
            logger.debug("Notification for %s suppressed (snoozed)", event.channel_id)
            return False
        text, level = formatted
        return await self._send(text, level)

    async def run(self, events: EventBus) -> None:
        """Consume the event bus until cancelled."""
        queue = events.subscribe()
        try:
            while True:
                event = await queue.get()
                try:
                    await self.handle_event(event)
                except Exception:
                    logger.exception("Notification for %s event failed", event.kind.value)
        finally:
            events.unsubscribe(queue)

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- Low-level dispatch -------------------------------------------------

    async def _send(self, text: str, level: NotifyLevel) -> bool:
        """Dispatch to all configured channels."""
        if not self._enabled:
            return False
        tasks = []
        if self.slack_webhook:
            tasks.append(self._send_slack(text))
        if self.telegram_token and self.telegram_chat_id:
            tasks.append(self._send_telegram(text))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.debug("Dispatched %s notification to %d targets", level.value, len(tasks))
        return bool(tasks)

    async def _send_slack(self, text: str) -> None:
        """POST to Slack incoming webhook."""
        try:
            resp = await self._client.post(self.slack_webhook, json={"text": text, "mrkdwn": True})
            if resp.status_code != 200:
                logger.warning("Slack webhook returned %d: %s", resp.status_code, resp.text[:200])
        except httpx.HTTPError as exc:
            logger.warning("Slack notification failed: %s", exc)

    async def _send_telegram(self, text: str) -> None:
        """POST to Telegram Bot API."""
        url = f"https://api.telegram.org/bot{self.telegram_token}/sendMessage"
        try:
            resp = await self._client.post(
                url,
                json={
                    "chat_id": self.telegram_chat_id,
                    "text": text,
                    "parse_mode": "Markdown",
                },
            )
            if resp.status_code != 200:
                logger.warning("Telegram API returned %d: %s", resp.status_code, resp.text[:200])
        except httpx.HTTPError as exc:
            logger.warning("Telegram notification failed: %s", exc)
