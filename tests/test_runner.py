"""Tests for the ChannelRunner state machine."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import patch

import pytest

from healthwatch.monitor.errors import GuardEvaluationError, InvariantError, StorageWriteError
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.models import ChannelState, EventKind, ProbeResult, SampleOutcome
from healthwatch.monitor.runner import ChannelRunner

from conftest import T0, fail, make_channel, ok


async def _run_sequence(runner, clock, channel, step: float = 10.0) -> list:
    """Run the channel repeatedly, advancing the clock ``step`` seconds before each run after the first."""
    samples = []
    for i, _ in enumerate(runner.gateway.scripts.get(channel.id, []).copy()):
        if i:
            clock.advance(step)
        samples.append(await runner.run_once(channel))
    return samples


# ── Confirmation and recovery ────────────────────────────────────────────────


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_outage_opens_at_threshold_with_first_failure_time(
        self, runner: ChannelRunner, gateway, clock, ledger,
    ) -> None:
        channel = make_channel(threshold=3)
        gateway.script(channel.id, fail(), fail(), fail())

        await _run_sequence(runner, clock, channel)

        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.OFFLINE
        assert state.consecutive_failures == 3
        outage = ledger.get_open(channel.id)
        assert outage is not None
        assert outage.first_failure_time == T0
        assert outage.confirmed_at == T0 + 20
        assert outage.start_time == T0 + 20
        assert outage.failure_count == 3

    @pytest.mark.asyncio
    async def test_below_threshold_no_outage(self, runner, gateway, clock, ledger) -> None:
        channel = make_channel(threshold=3)
        gateway.script(channel.id, fail(), fail())

        await _run_sequence(runner, clock, channel)

        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.UNKNOWN
        assert state.consecutive_failures == 2
        assert state.first_failure_time == T0
        assert ledger.get_open(channel.id) is None

    @pytest.mark.asyncio
    async def test_recovery_closes_outage(self, runner, gateway, clock, ledger) -> None:
        channel = make_channel(threshold=3)
        gateway.script(channel.id, fail(), fail(), fail(), ok())

        await _run_sequence(runner, clock, channel)

        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.ONLINE
        assert state.consecutive_failures == 0
        assert state.first_failure_time is None
        assert state.backoff_step == 0
        assert ledger.get_open(channel.id) is None

        closed = ledger.list_outages(channel.id)[0]
        assert closed.end_time == T0 + 30
        assert closed.duration == pytest.approx(10)
        assert closed.actual_duration == pytest.approx(30)

    @pytest.mark.asyncio
    async def test_flapping_never_confirms(self, runner, gateway, clock, ledger) -> None:
        channel = make_channel(threshold=3)
        gateway.script(channel.id, fail(), fail(), ok(), fail(), fail(), ok())

        await _run_sequence(runner, clock, channel)

        assert ledger.list_outages(channel.id) == []
        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.ONLINE
        assert state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_threshold_one_confirms_immediately(self, runner, gateway, clock, ledger) -> None:
        channel = make_channel(threshold=1)
        gateway.script(channel.id, fail())

        await runner.run_once(channel)

        outage = ledger.get_open(channel.id)
        assert outage.first_failure_time == outage.confirmed_at == T0

    @pytest.mark.asyncio
    async def test_first_success_goes_online_without_outage(self, runner, ledger, events) -> None:
        channel = make_channel()
        queue = events.subscribe()

        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.SUCCESS
        assert runner.get_channel_state(channel.id).state == ChannelState.ONLINE
        assert ledger.list_outages() == []
        kinds = [queue.get_nowait().kind for _ in range(queue.qsize())]
        assert EventKind.STATE_CHANGE in kinds

    @pytest.mark.asyncio
    async def test_backoff_step_grows_while_offline(self, runner, gateway, clock) -> None:
        channel = make_channel(threshold=2)
        gateway.script(channel.id, fail(), fail(), fail(), fail())

        await _run_sequence(runner, clock, channel)

        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.OFFLINE
        assert state.backoff_step == 2

    @pytest.mark.asyncio
    async def test_single_open_outage_per_channel(self, runner, gateway, clock, ledger) -> None:
        channel = make_channel(threshold=1)
        gateway.script(channel.id, *[fail() for _ in range(5)])

        await _run_sequence(runner, clock, channel)

        assert len(ledger.open_outages()) == 1


# ── Probe errors ─────────────────────────────────────────────────────────────


class TestProbeErrors:
    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self, runner, gateway) -> None:
        channel = make_channel()
        gateway.script(channel.id, RuntimeError("boom"))

        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.FAILURE
        assert sample.error == "Probe error: RuntimeError: boom"
        assert runner.get_channel_state(channel.id).consecutive_failures == 1
        assert not runner.is_running(channel.id)

    @pytest.mark.asyncio
    async def test_hung_probe_times_out(self, runner, gateway) -> None:
        channel = make_channel(timeout_ms=20)
        gateway.gate = asyncio.Event()

        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.FAILURE
        assert sample.error == "Probe timed out after 20ms"
        assert not runner.is_running(channel.id)

    @pytest.mark.asyncio
    async def test_non_result_is_failure(self, runner, gateway) -> None:
        channel = make_channel()
        gateway.script(channel.id, {"success": True})

        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.FAILURE
        assert "gateway returned dict" in sample.error

    @pytest.mark.asyncio
    async def test_failure_without_message_gets_reason(self, runner, gateway) -> None:
        channel = make_channel()
        gateway.script(channel.id, ProbeResult(success=False))

        sample = await runner.run_once(channel)

        assert sample.error == "Unknown failure"


# ── Guards ───────────────────────────────────────────────────────────────────


class TestGuards:
    @pytest.mark.asyncio
    async def test_denied_guard_records_skip(self, runner, gateway, guards, clock, storage) -> None:
        channel = make_channel(threshold=3, guards=("vpn",))
        gateway.script(channel.id, fail(), fail())
        await _run_sequence(runner, clock, channel)
        before = runner.get_channel_state(channel.id).last_sample

        guards.denied.add(channel.id)
        clock.advance(10)
        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.SKIPPED
        assert sample.success is None
        assert "vpn" in sample.error
        state = runner.get_channel_state(channel.id)
        assert state.consecutive_failures == 2
        assert state.first_failure_time == T0
        assert state.last_sample is before
        assert gateway.calls == [channel.id, channel.id]
        assert storage.recent_samples(channel.id, 1)[0].outcome == SampleOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_guard_error_is_a_skip(self, runner, gateway, guards) -> None:
        channel = make_channel(guards=("corp",))
        guards.error = GuardEvaluationError("Unknown guard 'corp'")

        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.SKIPPED
        assert "Unknown guard" in sample.error
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_skips_can_count_for_recency(self, gateway, ledger, storage, guards, clock) -> None:
        runner = ChannelRunner(
            gateway, ledger, storage, guards=guards, clock=clock, count_skipped_in_recency=True,
        )
        channel = make_channel(guards=("vpn",))
        guards.denied.add(channel.id)

        sample = await runner.run_once(channel)

        assert runner.get_channel_state(channel.id).last_sample is sample

    @pytest.mark.asyncio
    async def test_channels_without_guards_ignore_gate(self, runner, guards) -> None:
        channel = make_channel()
        guards.denied.add(channel.id)

        sample = await runner.run_once(channel)

        assert sample.outcome == SampleOutcome.SUCCESS


# ── Pause / concurrency ──────────────────────────────────────────────────────


class TestPause:
    @pytest.mark.asyncio
    async def test_paused_channel_does_not_probe(self, runner, gateway) -> None:
        channel = make_channel()
        runner.pause(channel.id)

        assert await runner.run_once(channel) is None
        assert gateway.calls == []

        runner.resume(channel.id)
        assert await runner.run_once(channel) is not None

    @pytest.mark.asyncio
    async def test_result_after_pause_is_discarded(self, runner, gateway, storage) -> None:
        channel = make_channel()
        gateway.gate = asyncio.Event()
        gateway.script(channel.id, fail())

        task = asyncio.create_task(runner.run_once(channel))
        await asyncio.sleep(0)
        runner.pause(channel.id)
        runner.resume(channel.id)
        gateway.gate.set()

        assert await task is None
        state = runner.get_channel_state(channel.id)
        assert state.consecutive_failures == 0
        assert state.last_sample is None
        assert storage.recent_samples(channel.id) == []

    @pytest.mark.asyncio
    async def test_overlapping_run_refused(self, runner, gateway) -> None:
        channel = make_channel()
        gateway.gate = asyncio.Event()

        first = asyncio.create_task(runner.run_once(channel))
        await asyncio.sleep(0)
        assert runner.is_running(channel.id)
        assert await runner.run_once(channel) is None

        gateway.gate.set()
        assert await first is not None
        assert gateway.calls == [channel.id]
        assert not runner.is_running(channel.id)


# ── Failure surfacing ────────────────────────────────────────────────────────


class TestSurfacing:
    @pytest.mark.asyncio
    async def test_invariant_error_raised_after_recording(self, runner, gateway, ledger, storage) -> None:
        channel = make_channel(threshold=1)
        ledger.open(channel.id, 0.0, 0.0, "stale", 1)
        gateway.script(channel.id, fail())

        with pytest.raises(InvariantError):
            await runner.run_once(channel)

        assert storage.recent_samples(channel.id)[0].outcome == SampleOutcome.FAILURE
        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.OFFLINE
        assert not state.is_running

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_state(self, runner, gateway, storage) -> None:
        channel = make_channel()
        gateway.script(channel.id, fail())

        with patch.object(storage, "append_sample", side_effect=StorageWriteError("locked")):
            sample = await runner.run_once(channel)

        state = runner.get_channel_state(channel.id)
        assert state.consecutive_failures == 1
        assert state.last_sample is sample

    @pytest.mark.asyncio
    async def test_outage_write_failure_still_records_sample(self, runner, gateway, storage, events) -> None:
        channel = make_channel(threshold=1)
        gateway.script(channel.id, fail())
        queue = events.subscribe()

        with patch.object(storage, "open_outage", side_effect=sqlite3.DatabaseError("database disk image is malformed")):
            sample = await runner.run_once(channel)

        assert sample is not None
        assert storage.recent_samples(channel.id) == [sample]
        assert runner.get_channel_state(channel.id).state == ChannelState.OFFLINE
        kinds = [queue.get_nowait().kind for _ in range(queue.qsize())]
        assert EventKind.STATE_CHANGE in kinds
        assert EventKind.SAMPLE in kinds

    @pytest.mark.asyncio
    async def test_sample_events_published(self, runner, events) -> None:
        channel = make_channel()
        queue = events.subscribe()

        await runner.run_once(channel)

        kinds = [queue.get_nowait().kind for _ in range(queue.qsize())]
        assert kinds.count(EventKind.SAMPLE) == 1

    def test_snapshot_is_serialisable(self, runner) -> None:
        runner.state_for("api")
        snap = runner.snapshot()
        assert snap["api"]["state"] == "unknown"
        assert "pause_epoch" not in snap["api"]


# ── Invariants ───────────────────────────────────────────────────────────────


class TestInvariants:
    @pytest.mark.asyncio
    async def test_streak_and_outage_invariants_hold(self, runner, gateway, clock, ledger) -> None:
        channel = make_channel(threshold=2)
        pattern = "ffsfffsfsffffss"
        gateway.script(channel.id, *[ok() if c == "s" else fail() for c in pattern])

        offline_transitions = 0
        previous = ChannelState.UNKNOWN
        for _ in pattern:
            clock.advance(10)
            await runner.run_once(channel)
            state = runner.get_channel_state(channel.id)
            assert (state.consecutive_failures == 0) == (state.first_failure_time is None)
            if state.state == ChannelState.OFFLINE:
                assert state.consecutive_failures >= channel.threshold
                if previous != ChannelState.OFFLINE:
                    offline_transitions += 1
            assert len(ledger.open_outages()) == (1 if state.state == ChannelState.OFFLINE else 0)
            previous = state.state

        outages = ledger.list_outages(channel.id)
        assert len(outages) == offline_transitions == 3
        for o in outages:
            assert o.actual_duration >= o.duration >= 0


class TestRestore:
    @pytest.mark.asyncio
    async def test_open_outage_survives_restart(self, gateway, storage, clock) -> None:
        channel = make_channel(threshold=2)
        OutageLedger(storage).open(channel.id, T0 - 100, T0 - 80, "refused", 2)

        ledger = OutageLedger(storage, channel_ids=[channel.id])
        runner = ChannelRunner(gateway, ledger, storage, clock=clock, probe_grace_ms=0)
        assert runner.restore_open_outages() == 1

        state = runner.get_channel_state(channel.id)
        assert state.state == ChannelState.OFFLINE
        assert state.first_failure_time == T0 - 100

        gateway.script(channel.id, fail(), ok())
        await runner.run_once(channel)
        assert len(ledger.open_outages()) == 1

        await runner.run_once(channel)
        closed = ledger.list_outages(channel.id)[0]
        assert closed.end_time == T0
        assert closed.actual_duration == pytest.approx(100)
