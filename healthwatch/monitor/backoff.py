"""Backoff policy for offline channels.

Exponential growth per consecutive failed run while offline:
    60s → 120s → 240s … capped at ``max_factor`` × interval
and, optionally, an absolute ``max_interval_sec``. Resets on recovery
because the runner clears ``backoff_step``.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from healthwatch.config import settings
from healthwatch.monitor.models import ChannelRuntimeState, ChannelState


@dataclass(frozen=True)
class BackoffPolicy:
    multiplier: float = 2.0
    max_factor: float = 10.0
    max_interval_sec: float | None = None

    @classmethod
    def from_settings(cls) -> BackoffPolicy:
        return cls(
            multiplier=settings.backoff_multiplier,
            max_factor=settings.backoff_max_factor,
            max_interval_sec=settings.backoff_max_interval_sec or None,
        )

    def factor(self, step: int) -> float:
        """Multiplier applied to the base interval at a given backoff step."""
        if step <= 0:
            return 1.0
        return min(self.multiplier ** step, self.max_factor)

    def next_delay(self, interval_sec: float, state: ChannelRuntimeState) -> float:
        """Seconds until the next regular run for a channel in ``state``."""
        if state.state != ChannelState.OFFLINE:
            return interval_sec
        delay = interval_sec * self.factor(state.backoff_step)
        if self.max_interval_sec is not None:
            # Never drop below the base interval even if the cap is misconfigured
            delay = min(delay, max(self.max_interval_sec, interval_sec))
        return delay


def jittered(interval_sec: float, jitter_pct: float, rng: random.Random | None = None) -> float:
    """Uniformly spread ``interval_sec`` within ±jitter_pct percent."""
    if jitter_pct <= 0:
        return interval_sec
    spread = jitter_pct / 100.0
    r = (rng or random).uniform(-spread, spread)
    return interval_sec * (1 + r)
