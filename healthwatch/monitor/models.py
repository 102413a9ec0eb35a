"""Shared data model for the monitoring engine.

All timestamps are float epoch seconds; durations are seconds.
Latencies stay in milliseconds to match probe output.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class ChannelState(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class SampleOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"  # guard denied, no verdict


class EventKind(str, Enum):
    SAMPLE = "sample"
    STATE_CHANGE = "state_change"
    OUTAGE_OPENED = "outage_opened"
    OUTAGE_CLOSED = "outage_closed"
    DIAGNOSTIC = "diagnostic"
    WATCH_STARTED = "watch_started"
    WATCH_STOPPED = "watch_stopped"


@dataclass
class ProbeResult:
    """What a ProbeGateway returns for one attempt."""

    success: bool
    latency_ms: float = 0.0
    error: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class Sample:
    """Immutable record of one probe attempt."""

    channel_id: str
    timestamp: float
    outcome: SampleOutcome
    latency_ms: float | None = None
    error: str | None = None

    @property
    def success(self) -> bool | None:
        if self.outcome == SampleOutcome.SKIPPED:
            return None
        return self.outcome == SampleOutcome.SUCCESS

    @property
    def skipped(self) -> bool:
        return self.outcome == SampleOutcome.SKIPPED

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        d["success"] = self.success
        return d


@dataclass
class Outage:
    """One confirmed incident.

    ``start_time`` / ``confirmed_at`` mark when the threshold was crossed;
    ``first_failure_time`` marks when impact actually began.
    """

    channel_id: str
    reason: str
    failure_count: int
    start_time: float
    first_failure_time: float
    confirmed_at: float
    end_time: float | None = None
    duration: float | None = None  # end - start (legacy)
    actual_duration: float | None = None  # end - first failure
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["is_open"] = self.is_open
        return d


@dataclass
class ChannelRuntimeState:
    """Per-channel execution state. Only the ChannelRunner writes to this."""

    channel_id: str
    state: ChannelState = ChannelState.UNKNOWN
    consecutive_failures: int = 0
    first_failure_time: float | None = None
    last_sample: Sample | None = None
    backoff_step: int = 0
    is_paused: bool = False
    is_running: bool = False
    last_state_change: float | None = None
    pause_epoch: int = 0  # bumped on pause/resume to invalidate in-flight results

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "first_failure_time": self.first_failure_time,
            "last_sample": self.last_sample.to_dict() if self.last_sample else None,
            "backoff_step": self.backoff_step,
            "is_paused": self.is_paused,
            "is_running": self.is_running,
            "last_state_change": self.last_state_change,
        }


@dataclass(frozen=True)
class MonitorEvent:
    """Pushed to event bus subscribers (UI, API stream, notifiers)."""

    kind: EventKind
    channel_id: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "channel_id": self.channel_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }
