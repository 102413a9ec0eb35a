"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from healthwatch.channels.registry import Channel
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.models import ProbeResult
from healthwatch.monitor.runner import ChannelRunner
from healthwatch.storage.memory import InMemoryStorage

T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeGateway:
    """Scripted ProbeGateway.

    Results queued with ``script()`` are returned in order per channel
    (exceptions are raised); afterwards ``default`` is returned. Setting
    ``gate`` to an unset Event holds every probe until it is set.
    """

    def __init__(self, default: ProbeResult | None = None) -> None:
        self.default = default or ProbeResult(success=True, latency_ms=12.0)
        self.scripts: dict[str, list[Any]] = {}
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    def script(self, channel_id: str, *results: Any) -> None:
        self.scripts.setdefault(channel_id, []).extend(results)

    async def probe(self, channel: Channel, timeout_ms: int) -> ProbeResult:
        self.calls.append(channel.id)
        if self.gate is not None:
            await self.gate.wait()
        queue = self.scripts.get(channel.id)
        result = queue.pop(0) if queue else self.default
        if isinstance(result, BaseException):
            raise result
        return result


class FakeGuards:
    """EligibilityGate whose answer is set per channel."""

    def __init__(self) -> None:
        self.denied: set[str] = set()
        self.error: Exception | None = None

    async def is_eligible(self, channel: Channel) -> bool:
        if self.error is not None:
            raise self.error
        return channel.id not in self.denied


def fail(error: str = "Connection refused", latency_ms: float = 5.0) -> ProbeResult:
    return ProbeResult(success=False, latency_ms=latency_ms, error=error)


def ok(latency_ms: float = 10.0) -> ProbeResult:
    return ProbeResult(success=True, latency_ms=latency_ms)


def make_channel(channel_id: str = "api", **kw: Any) -> Channel:
    kw.setdefault("type", "https")
    kw.setdefault("target", f"https://{channel_id}.example.com/health")
    kw.setdefault("interval_sec", 60.0)
    kw.setdefault("timeout_ms", 1000)
    kw.setdefault("threshold", 3)
    kw.setdefault("jitter_pct", 0.0)
    return Channel(id=channel_id, **kw)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def guards() -> FakeGuards:
    return FakeGuards()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def events() -> EventBus:
    return EventBus(maxsize=1000)


@pytest.fixture
def ledger(storage, events) -> OutageLedger:
    return OutageLedger(storage, events=events)


@pytest.fixture
def runner(gateway, ledger, storage, guards, events, clock) -> ChannelRunner:
    return ChannelRunner(
        gateway, ledger, storage, guards=guards, events=events, clock=clock,
        probe_grace_ms=0, count_skipped_in_recency=False,
    )
