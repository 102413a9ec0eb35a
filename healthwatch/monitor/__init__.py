"""Monitoring engine — scheduler, channel runner, outage ledger and watches."""

from healthwatch.monitor.backoff import BackoffPolicy, jittered
from healthwatch.monitor.errors import (
    GuardEvaluationError,
    HealthWatchError,
    InvariantError,
    NotFoundError,
    ProbeExecutionError,
    ProbeTimeoutError,
    StorageWriteError,
)
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.models import (
    ChannelRuntimeState,
    ChannelState,
    EventKind,
    MonitorEvent,
    Outage,
    ProbeResult,
    Sample,
    SampleOutcome,
)
from healthwatch.monitor.ownership import Ownership
from healthwatch.monitor.runner import ChannelRunner, EligibilityGate, ProbeGateway
from healthwatch.monitor.scheduler import Scheduler
from healthwatch.monitor.watch import WatchManager, WatchSession, parse_duration

__all__ = [
    "BackoffPolicy",
    "ChannelRunner",
    "ChannelRuntimeState",
    "ChannelState",
    "EligibilityGate",
    "EventBus",
    "EventKind",
    "GuardEvaluationError",
    "HealthWatchError",
    "InvariantError",
    "MonitorEvent",
    "NotFoundError",
    "Outage",
    "OutageLedger",
    "Ownership",
    "ProbeExecutionError",
    "ProbeGateway",
    "ProbeResult",
    "ProbeTimeoutError",
    "Sample",
    "SampleOutcome",
    "Scheduler",
    "StorageWriteError",
    "WatchManager",
    "WatchSession",
    "jittered",
    "parse_duration",
]
