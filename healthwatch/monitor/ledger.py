"""Outage ledger — the only place outages are opened and closed.

Keeps an in-memory index of open outages (one per channel at most) plus the
closed history of this process, and forwards every mutation to storage.
A storage failure is logged; the ledger's own view still advances.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from healthwatch.monitor.errors import InvariantError, NotFoundError, StorageWriteError
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.models import EventKind, MonitorEvent, Outage
from healthwatch.storage.base import MonitorStorage, outage_durations

logger = logging.getLogger(__name__)


class OutageLedger:
    def __init__(
        self,
        storage: MonitorStorage,
        events: EventBus | None = None,
        channel_ids: list[str] | None = None,
    ) -> None:
        self.storage = storage
        self.events = events
        self._open: dict[str, Outage] = {}
        self._closed: list[Outage] = []
        if channel_ids:
            self.rehydrate(channel_ids)

    def rehydrate(self, channel_ids: list[str]) -> int:
        """Pick up outages left open by a previous process so they are not re-opened."""
        count = 0
        for channel_id in channel_ids:
            if channel_id in self._open:
                continue
            outage = self.storage.get_open_outage(channel_id)
            if outage is not None:
                self._open[channel_id] = outage
                count += 1
        if count:
            logger.info("Rehydrated %d open outages from storage", count)
        return count

    # ── Mutations ────────────────────────────────────────────────────────

    def open(
        self,
        channel_id: str,
        first_failure_time: float,
        confirmed_at: float,
        reason: str,
        failure_count: int,
    ) -> Outage:
        """Record a newly confirmed outage."""
        if channel_id in self._open:
            raise InvariantError(f"Outage already open for channel '{channel_id}'")
        if first_failure_time > confirmed_at:
            raise InvariantError(
                f"first_failure_time {first_failure_time} is after confirmation {confirmed_at}"
            )

        outage = Outage(
            channel_id=channel_id,
            reason=reason,
            failure_count=failure_count,
            start_time=confirmed_at,
            first_failure_time=first_failure_time,
            confirmed_at=confirmed_at,
        )
        self._open[channel_id] = outage

        try:
            self.storage.open_outage(outage)
        except StorageWriteError as e:
            logger.warning("Failed to persist outage open for %s: %s", channel_id, e)
        except Exception:
            logger.exception("Storage error while opening outage for %s", channel_id)

        logger.warning(
            "Outage opened: %s (%s, %d failures, impact since %.3f)",
            channel_id, reason, failure_count, first_failure_time,
        )
        self._publish(EventKind.OUTAGE_OPENED, outage, confirmed_at)
        return replace(outage)

    def close(self, channel_id: str, end_time: float) -> Outage:
        """Close the open outage for a channel and compute both durations."""
        outage = self._open.get(channel_id)
        if outage is None:
            raise NotFoundError(f"No open outage for channel '{channel_id}'")

        duration, actual = outage_durations(outage, end_time)
        closed = replace(outage, end_time=end_time, duration=duration, actual_duration=actual)
        del self._open[channel_id]
        self._closed.append(closed)

        try:
            self.storage.close_outage(channel_id, end_time)
        except NotFoundError:
            logger.warning("Storage had no open outage for %s — close recorded in memory only", channel_id)
        except StorageWriteError as e:
            logger.warning("Failed to persist outage close for %s: %s", channel_id, e)
        except Exception:
            logger.exception("Storage error while closing outage for %s", channel_id)

        logger.info(
            "Outage closed: %s after %.1fs (actual impact %.1fs)",
            channel_id, duration, actual,
        )
        self._publish(EventKind.OUTAGE_CLOSED, closed, end_time)
        return replace(closed)

    # ── Queries ──────────────────────────────────────────────────────────

    def get_open(self, channel_id: str) -> Outage | None:
        outage = self._open.get(channel_id)
        return replace(outage) if outage else None

    def open_outages(self) -> list[Outage]:
        return [replace(o) for o in self._open.values()]

    def list_outages(
        self, channel_id: str | None = None, since: float | None = None,
    ) -> list[Outage]:
        """Outages newest first. Storage is authoritative; falls back to memory."""
        try:
            return self.storage.list_outages(channel_id, since)
        except Exception:
            logger.exception("Storage query failed — serving in-memory outages")
        result = [
            replace(o) for o in [*self._closed, *self._open.values()]
            if (channel_id is None or o.channel_id == channel_id)
            and (since is None or o.start_time >= since)
        ]
        return sorted(result, key=lambda o: o.start_time, reverse=True)

    def _publish(self, kind: EventKind, outage: Outage, timestamp: float) -> None:
        if self.events is not None:
            self.events.publish(MonitorEvent(
                kind=kind, channel_id=outage.channel_id, timestamp=timestamp,
                data=outage.to_dict(),
            ))
