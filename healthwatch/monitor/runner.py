"""Channel runner — turns one probe outcome into state transitions.

The runner never loops; the scheduler drives it. Per run:

1. paused → return without probing
2. guards deny → record a *skipped* sample, failure streak untouched
3. probe (bounded by timeout + grace); errors and timeouts are failures
4. success after non-online → recovery: close outage, reset streak
5. failure reaching threshold → confirmation: open outage using the
   first failure of the streak as the impact start
6. record the sample

State machine: unknown → online | offline, online ↔ offline.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

from healthwatch.channels.registry import Channel
from healthwatch.config import settings
from healthwatch.monitor.errors import (
    GuardEvaluationError,
    InvariantError,
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
    ProbeResult,
    Sample,
    SampleOutcome,
)
from healthwatch.storage.base import MonitorStorage

logger = logging.getLogger(__name__)


class ProbeGateway(Protocol):
    async def probe(self, channel: Channel, timeout_ms: int) -> ProbeResult: ...


class EligibilityGate(Protocol):
    async def is_eligible(self, channel: Channel) -> bool: ...


class ChannelRunner:
    """Owns every channel's runtime state and the transitions between states."""

    def __init__(
        self,
        gateway: ProbeGateway,
        ledger: OutageLedger,
        storage: MonitorStorage,
        guards: EligibilityGate | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        probe_grace_ms: int | None = None,
        count_skipped_in_recency: bool | None = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.storage = storage
        self.guards = guards
        self.events = events
        self._clock = clock
        self._grace_ms = settings.probe_grace_ms if probe_grace_ms is None else probe_grace_ms
        self._count_skipped = (
            settings.count_skipped_in_recency
            if count_skipped_in_recency is None else count_skipped_in_recency
        )
        self._states: dict[str, ChannelRuntimeState] = {}

    # ── State access ─────────────────────────────────────────────────────

    def state_for(self, channel_id: str) -> ChannelRuntimeState:
        state = self._states.get(channel_id)
        if state is None:
            state = ChannelRuntimeState(channel_id=channel_id)
            self._states[channel_id] = state
        return state

    def get_channel_state(self, channel_id: str) -> ChannelRuntimeState | None:
        return self._states.get(channel_id)

    def snapshot(self) -> dict[str, dict]:
        """Read-only mirror of every channel, safe to hand to UI or followers."""
        return {cid: s.to_dict() for cid, s in self._states.items()}

    def forget(self, channel_id: str) -> None:
        self._states.pop(channel_id, None)

    def restore_open_outages(self) -> int:
        """Mark channels with an outage still open in the ledger as offline.

        Used after a restart so the next failure extends the existing outage
        instead of trying to open a second one.
        """
        restored = 0
        for outage in self.ledger.open_outages():
            state = self.state_for(outage.channel_id)
            if state.state != ChannelState.UNKNOWN:
                continue
            state.state = ChannelState.OFFLINE
            state.consecutive_failures = max(1, outage.failure_count)
            state.first_failure_time = outage.first_failure_time
            state.last_state_change = outage.confirmed_at
            restored += 1
        if restored:
            logger.info("Restored %d channels to offline from open outages", restored)
        return restored

    # ── Control ──────────────────────────────────────────────────────────

    def pause(self, channel_id: str) -> None:
        state = self.state_for(channel_id)
        state.is_paused = True
        state.pause_epoch += 1

    def resume(self, channel_id: str) -> None:
        state = self.state_for(channel_id)
        state.is_paused = False
        state.pause_epoch += 1

    def is_paused(self, channel_id: str) -> bool:
        state = self._states.get(channel_id)
        return bool(state and state.is_paused)

    def is_running(self, channel_id: str) -> bool:
        state = self._states.get(channel_id)
        return bool(state and state.is_running)

    # ── Run ──────────────────────────────────────────────────────────────

    async def run_once(self, channel: Channel) -> Sample | None:
        """Run one probe cycle. Returns the recorded sample, or None if nothing ran.

        Never raises for probe or guard problems. Raises ``InvariantError``
        (after the sample is recorded) if the ledger rejects a transition.
        """
        state = self.state_for(channel.id)
        if state.is_paused:
            logger.debug("Channel %s is paused — skipping run", channel.id)
            return None
        if state.is_running:
            logger.debug("Channel %s already has a run in flight", channel.id)
            return None

        epoch = state.pause_epoch
        state.is_running = True
        try:
            return await self._run(channel, state, epoch)
        finally:
            state.is_running = False

    async def _run(
        self, channel: Channel, state: ChannelRuntimeState, epoch: int,
    ) -> Sample | None:
        if channel.guards and self.guards is not None:
            skip_reason = await self._check_guards(channel)
            if skip_reason is not None:
                if state.pause_epoch != epoch:
                    return None
                sample = Sample(
                    channel_id=channel.id, timestamp=self._clock(),
                    outcome=SampleOutcome.SKIPPED, error=skip_reason,
                )
                self._record(state, sample)
                return sample

        result = await self._probe(channel)

        if state.pause_epoch != epoch:
            logger.info("Discarding stale probe result for %s (paused or resumed mid-probe)", channel.id)
            return None

        now = self._clock()
        pending: InvariantError | None = None
        if result.success:
            sample = Sample(
                channel_id=channel.id, timestamp=now, outcome=SampleOutcome.SUCCESS,
                latency_ms=result.latency_ms, error=result.error,
            )
            self._on_success(channel, state, now)
        else:
            sample = Sample(
                channel_id=channel.id, timestamp=now, outcome=SampleOutcome.FAILURE,
                latency_ms=result.latency_ms, error=result.error or "Unknown failure",
            )
            pending = self._on_failure(channel, state, now, sample.error or "Unknown failure")

        self._record(state, sample)
        if pending is not None:
            raise pending
        return sample

    async def _check_guards(self, channel: Channel) -> str | None:
        """Return a skip reason, or None when the channel may run."""
        try:
            if await self.guards.is_eligible(channel):
                return None
            return f"Guard conditions not met: {', '.join(channel.guards)}"
        except GuardEvaluationError as e:
            logger.warning("Guard evaluation failed for %s: %s", channel.id, e)
            return f"Guard check failed: {e}"
        except Exception as e:
            logger.exception("Unexpected guard error for %s", channel.id)
            return f"Guard check failed: {type(e).__name__}: {e}"

    async def _probe(self, channel: Channel) -> ProbeResult:
        budget = (channel.timeout_ms + self._grace_ms) / 1000
        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.gateway.probe(channel, channel.timeout_ms), timeout=budget,
            )
        except asyncio.TimeoutError:
            err = ProbeTimeoutError(channel.id, channel.timeout_ms)
            return ProbeResult(success=False, latency_ms=round((time.perf_counter() - t0) * 1000, 1), error=str(err))
        except Exception as e:
            err = ProbeExecutionError(channel.id, e)
            logger.warning("Probe for %s raised: %s", channel.id, err)
            return ProbeResult(success=False, latency_ms=round((time.perf_counter() - t0) * 1000, 1), error=str(err))

        if not isinstance(result, ProbeResult):
            err = ProbeExecutionError(channel.id, TypeError(f"gateway returned {type(result).__name__}"))
            logger.warning("Probe for %s: %s", channel.id, err)
            return ProbeResult(success=False, error=str(err))
        return result

    # ── Transitions ──────────────────────────────────────────────────────

    def _on_success(self, channel: Channel, state: ChannelRuntimeState, now: float) -> None:
        old = state.state

        if old != ChannelState.ONLINE:
            # Recovery
            if self.ledger.get_open(channel.id) is not None:
                self.ledger.close(channel.id, now)
            state.state = ChannelState.ONLINE
            state.last_state_change = now
            logger.info("Channel %s: %s → online", channel.id, old.value)

        state.consecutive_failures = 0
        state.first_failure_time = None
        state.backoff_step = 0

        if old != ChannelState.ONLINE:
            self._emit_state_change(channel.id, old, ChannelState.ONLINE, now)

    def _on_failure(
        self, channel: Channel, state: ChannelRuntimeState, now: float, reason: str,
    ) -> InvariantError | None:
        pending: InvariantError | None = None
        state.consecutive_failures += 1
        if state.first_failure_time is None:
            state.first_failure_time = now

        if state.consecutive_failures >= channel.threshold and state.state != ChannelState.OFFLINE:
            # Confirmation
            old = state.state
            state.state = ChannelState.OFFLINE
            state.last_state_change = now
            try:
                self.ledger.open(
                    channel.id,
                    first_failure_time=state.first_failure_time,
                    confirmed_at=now,
                    reason=reason,
                    failure_count=state.consecutive_failures,
                )
            except InvariantError as e:
                pending = e
            logger.warning(
                "Channel %s: %s → offline after %d failures (%s)",
                channel.id, old.value, state.consecutive_failures, reason,
            )
            self._emit_state_change(channel.id, old, ChannelState.OFFLINE, now)
        elif state.state == ChannelState.OFFLINE:
            state.backoff_step += 1
            logger.debug(
                "Channel %s still offline (%d failures, backoff step %d)",
                channel.id, state.consecutive_failures, state.backoff_step,
            )
        return pending

    # ── Recording ────────────────────────────────────────────────────────

    def _record(self, state: ChannelRuntimeState, sample: Sample) -> None:
        if not sample.skipped or self._count_skipped:
            state.last_sample = sample

        try:
            self.storage.append_sample(sample)
        except StorageWriteError as e:
            logger.warning("Failed to persist sample for %s: %s", sample.channel_id, e)
        except Exception:
            logger.exception("Storage error while recording sample for %s", sample.channel_id)

        if self.events is not None:
            self.events.publish(MonitorEvent(
                kind=EventKind.SAMPLE, channel_id=sample.channel_id,
                timestamp=sample.timestamp, data=sample.to_dict(),
            ))

    def _emit_state_change(
        self, channel_id: str, old: ChannelState, new: ChannelState, now: float,
    ) -> None:
        if self.events is not None:
            self.events.publish(MonitorEvent(
                kind=EventKind.STATE_CHANGE, channel_id=channel_id, timestamp=now,
                data={"old_state": old.value, "new_state": new.value},
            ))
