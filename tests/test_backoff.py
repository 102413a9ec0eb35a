"""Tests for the backoff policy and first-run jitter."""

from __future__ import annotations

import random

import pytest

from healthwatch.monitor.backoff import BackoffPolicy, jittered
from healthwatch.monitor.models import ChannelRuntimeState, ChannelState


def _state(state: ChannelState, step: int = 0) -> ChannelRuntimeState:
    return ChannelRuntimeState(channel_id="api", state=state, backoff_step=step)


class TestBackoffPolicy:
    def test_factor_sequence(self) -> None:
        policy = BackoffPolicy(multiplier=2.0, max_factor=10.0)
        assert [policy.factor(s) for s in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    @pytest.mark.parametrize("state", [ChannelState.UNKNOWN, ChannelState.ONLINE])
    def test_no_backoff_unless_offline(self, state: ChannelState) -> None:
        policy = BackoffPolicy()
        assert policy.next_delay(60.0, _state(state, step=5)) == 60.0

    def test_offline_delay_grows(self) -> None:
        policy = BackoffPolicy(multiplier=2.0, max_factor=10.0)
        assert policy.next_delay(60.0, _state(ChannelState.OFFLINE, 0)) == 60.0
        assert policy.next_delay(60.0, _state(ChannelState.OFFLINE, 2)) == 240.0
        assert policy.next_delay(60.0, _state(ChannelState.OFFLINE, 9)) == 600.0

    def test_absolute_cap(self) -> None:
        policy = BackoffPolicy(multiplier=2.0, max_factor=10.0, max_interval_sec=300.0)
        assert policy.next_delay(60.0, _state(ChannelState.OFFLINE, 3)) == 300.0

    def test_cap_never_below_interval(self) -> None:
        policy = BackoffPolicy(max_interval_sec=10.0)
        assert policy.next_delay(60.0, _state(ChannelState.OFFLINE, 3)) == 60.0

    def test_from_settings_zero_cap_means_none(self) -> None:
        assert BackoffPolicy.from_settings().max_interval_sec is None


class TestJitter:
    def test_zero_jitter_is_exact(self) -> None:
        assert jittered(60.0, 0) == 60.0

    def test_jitter_bounds(self) -> None:
        rng = random.Random(7)
        values = [jittered(60.0, 10.0, rng) for _ in range(200)]
        assert all(54.0 <= v <= 66.0 for v in values)
        assert min(values) < 58.0 < 62.0 < max(values)
