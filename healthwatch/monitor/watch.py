"""Per-channel watch sessions — short bursts of intensive probing.

A watch pins a channel to a fast interval for a fixed duration ("1h",
"12h", "forever" or a number of seconds), overriding both the configured
interval and offline backoff. Expiry is checked lazily whenever the
scheduler asks for the channel's interval, so no extra timers exist.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from healthwatch.config import settings
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.models import EventKind, MonitorEvent

logger = logging.getLogger(__name__)

DURATION_PRESETS: dict[str, float | None] = {
    "1h": 3600.0,
    "12h": 12 * 3600.0,
    "forever": None,
}


def parse_duration(value: str | float | int | None) -> float | None:
    """Seconds for a watch duration; ``None`` means it never expires."""
    if value is None:
        return DURATION_PRESETS["1h"]
    if isinstance(value, str):
        if value in DURATION_PRESETS:
            return DURATION_PRESETS[value]
        try:
            value = float(value)
        except ValueError:
            raise ValueError(
                f"Invalid watch duration {value!r}; expected one of {list(DURATION_PRESETS)} or seconds"
            ) from None
    if value <= 0:
        raise ValueError("Watch duration must be positive")
    return float(value)


@dataclass
class WatchSession:
    channel_id: str
    interval_sec: float
    started_at: float
    expires_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "interval_sec": self.interval_sec,
            "started_at": self.started_at,
            "expires_at": self.expires_at,
        }


class WatchManager:
    """Tracks at most one active watch per channel."""

    def __init__(
        self,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        default_interval_sec: float | None = None,
    ) -> None:
        self.events = events
        self._clock = clock
        self.default_interval_sec = (
            settings.watch_interval_sec if default_interval_sec is None else default_interval_sec
        )
        self._sessions: dict[str, WatchSession] = {}

    def start(
        self,
        channel_id: str,
        duration: str | float | None = "1h",
        interval_sec: float | None = None,
    ) -> WatchSession:
        """Start (or replace) the watch for a channel."""
        seconds = parse_duration(duration)
        interval = interval_sec if interval_sec is not None else self.default_interval_sec
        if interval <= 0:
            raise ValueError("Watch interval must be positive")

        self.stop(channel_id, reason="replaced")
        now = self._clock()
        session = WatchSession(
            channel_id=channel_id,
            interval_sec=interval,
            started_at=now,
            expires_at=now + seconds if seconds is not None else None,
        )
        self._sessions[channel_id] = session
        logger.info(
            "Watch started on %s: every %.1fs %s", channel_id, interval,
            "indefinitely" if seconds is None else f"for {seconds:.0f}s",
        )
        self._publish(EventKind.WATCH_STARTED, session, now, {})
        return session

    def stop(self, channel_id: str, reason: str = "stopped") -> WatchSession | None:
        session = self._sessions.pop(channel_id, None)
        if session is None:
            return None
        logger.info("Watch on %s ended (%s)", channel_id, reason)
        self._publish(EventKind.WATCH_STOPPED, session, self._clock(), {"reason": reason})
        return session

    def stop_all(self) -> int:
        ids = list(self._sessions)
        for channel_id in ids:
            self.stop(channel_id)
        return len(ids)

    def get(self, channel_id: str) -> WatchSession | None:
        """The channel's active watch, ending it first if it has expired."""
        session = self._sessions.get(channel_id)
        if session is not None and session.is_expired(self._clock()):
            self.stop(channel_id, reason="expired")
            return None
        return session

    def interval_for(self, channel_id: str) -> float | None:
        session = self.get(channel_id)
        return session.interval_sec if session else None

    def active(self) -> list[WatchSession]:
        return [s for s in (self.get(cid) for cid in list(self._sessions)) if s is not None]

    def _publish(self, kind: EventKind, session: WatchSession, now: float, extra: dict[str, Any]) -> None:
        if self.events is not None:
            self.events.publish(MonitorEvent(
                kind=kind, channel_id=session.channel_id, timestamp=now,
                data={**session.to_dict(), **extra},
            ))
