"""In-memory storage — used by tests and by follower processes."""

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import replace

from healthwatch.monitor.errors import NotFoundError
from healthwatch.monitor.models import Outage, Sample
from healthwatch.storage.base import outage_durations


class InMemoryStorage:
    """Keeps the last ``max_samples`` samples per channel and every outage."""

    def __init__(self, max_samples: int = 1000) -> None:
        self._samples: dict[str, deque[Sample]] = defaultdict(lambda: deque(maxlen=max_samples))
        self._outages: list[Outage] = []

    def append_sample(self, sample: Sample) -> None:
        self._samples[sample.channel_id].append(sample)

    def open_outage(self, outage: Outage) -> None:
        self._outages.append(replace(outage))

    def close_outage(self, channel_id: str, end_time: float) -> tuple[float, float]:
        outage = self._find_open(channel_id)
        if outage is None:
            raise NotFoundError(f"No open outage for channel '{channel_id}'")
        duration, actual = outage_durations(outage, end_time)
        outage.end_time = end_time
        outage.duration = duration
        outage.actual_duration = actual
        return duration, actual

    def get_open_outage(self, channel_id: str) -> Outage | None:
        outage = self._find_open(channel_id)
        return replace(outage) if outage else None

    def _find_open(self, channel_id: str) -> Outage | None:
        return next(
            (o for o in reversed(self._outages) if o.channel_id == channel_id and o.is_open),
            None,
        )

    def list_outages(
        self, channel_id: str | None = None, since: float | None = None,
    ) -> list[Outage]:
        result = [
            replace(o) for o in self._outages
            if (channel_id is None or o.channel_id == channel_id)
            and (since is None or o.start_time >= since)
        ]
        return sorted(result, key=lambda o: o.start_time, reverse=True)

    def recent_samples(self, channel_id: str, limit: int = 100) -> list[Sample]:
        samples = list(self._samples.get(channel_id, ()))
        return list(reversed(samples[-limit:]))

    def samples_since(self, channel_id: str, since: float) -> list[Sample]:
        return [s for s in self._samples.get(channel_id, ()) if s.timestamp >= since]

    def cleanup_old(self, days: int = 30) -> int:
        cutoff = time.time() - days * 86400
        removed = 0
        for channel_id, samples in self._samples.items():
            kept = [s for s in samples if s.timestamp >= cutoff]
            removed += len(samples) - len(kept)
            samples.clear()
            samples.extend(kept)
        return removed

    def close(self) -> None:
        pass
