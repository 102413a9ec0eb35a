"""Error taxonomy for the monitoring engine.

Probe and guard errors never leave the ChannelRunner; they become failed or
skipped samples. InvariantError is the only one surfaced to the scheduler.
"""

from __future__ import annotations


class HealthWatchError(Exception):
    """Base class for all engine errors."""


class ProbeTimeoutError(HealthWatchError):
    """Raised when a probe does not resolve within its timeout (plus grace)."""

    def __init__(self, channel_id: str, timeout_ms: int) -> None:
        self.channel_id = channel_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Probe timed out after {timeout_ms}ms")


class ProbeExecutionError(HealthWatchError):
    """Raised when the probe layer throws instead of returning a result."""

    def __init__(self, channel_id: str, cause: BaseException) -> None:
        self.channel_id = channel_id
        self.cause = cause
        super().__init__(f"Probe error: {type(cause).__name__}: {cause}")


class GuardEvaluationError(HealthWatchError):
    """Raised when a guard check itself fails (not when it denies)."""


class InvariantError(HealthWatchError):
    """Raised when the outage ledger detects a double-open or similar logic bug."""


class NotFoundError(HealthWatchError):
    """Raised when closing an outage that is not open."""


class StorageWriteError(HealthWatchError):
    """Raised by a storage backend after its retries are exhausted."""
