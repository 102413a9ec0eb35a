"""Storage contract consumed by the outage ledger and channel runner."""

from __future__ import annotations

from typing import Protocol

from healthwatch.monitor.models import Outage, Sample


class MonitorStorage(Protocol):
    """Persistence for samples and outages.

    Writes may raise ``StorageWriteError``; ``close_outage`` raises
    ``NotFoundError`` when nothing is open so replays never double-write.
    """

    def append_sample(self, sample: Sample) -> None: ...

    def open_outage(self, outage: Outage) -> None: ...

    def close_outage(self, channel_id: str, end_time: float) -> tuple[float, float]: ...

    def get_open_outage(self, channel_id: str) -> Outage | None: ...

    def list_outages(
        self, channel_id: str | None = None, since: float | None = None,
    ) -> list[Outage]: ...

    def recent_samples(self, channel_id: str, limit: int = 100) -> list[Sample]: ...

    def samples_since(self, channel_id: str, since: float) -> list[Sample]: ...

    def cleanup_old(self, days: int = 30) -> int: ...

    def close(self) -> None: ...


def outage_durations(outage: Outage, end_time: float) -> tuple[float, float]:
    """Return ``(duration, actual_duration)`` for closing ``outage`` at ``end_time``."""
    duration = max(0.0, end_time - outage.start_time)
    actual = max(duration, end_time - outage.first_failure_time)
    return duration, actual
