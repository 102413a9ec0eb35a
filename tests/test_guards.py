"""Tests for guard evaluation."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from healthwatch.channels.registry import GuardDef
from healthwatch.guards import GuardEvaluator
from healthwatch.monitor.errors import GuardEvaluationError

from conftest import FakeClock, make_channel

GUARDS = {
    "vpn": GuardDef(name="vpn", type="netIfUp", interface="tun0"),
    "local": GuardDef(name="local", type="dns", hostname="localhost"),
    "bogus": GuardDef(name="bogus", type="dns", hostname="this-host-does-not-exist-xyz.invalid"),
}


def _evaluator(interfaces: set[str], clock: FakeClock | None = None, ttl: float = 30.0) -> GuardEvaluator:
    return GuardEvaluator(
        GUARDS, ttl_sec=ttl, clock=clock or FakeClock(), interface_lister=lambda: interfaces,
    )


class TestNetIfUp:
    @pytest.mark.asyncio
    async def test_interface_present(self) -> None:
        evaluator = _evaluator({"lo", "tun0"})
        assert await evaluator.is_eligible(make_channel(guards=("vpn",)))

    @pytest.mark.asyncio
    async def test_interface_missing(self) -> None:
        evaluator = _evaluator({"lo", "eth0"})
        result = await evaluator.check("vpn")
        assert not result.passed
        assert "tun0" in result.message
        assert not await evaluator.is_eligible(make_channel(guards=("vpn",)))

    @pytest.mark.asyncio
    async def test_listing_error(self) -> None:
        evaluator = GuardEvaluator(GUARDS, interface_lister=MagicMock(side_effect=OSError("no netlink")))
        with pytest.raises(GuardEvaluationError):
            await evaluator.check("vpn")


class TestDns:
    @pytest.mark.asyncio
    async def test_localhost_resolves(self) -> None:
        assert (await _evaluator(set()).check("local")).passed

    @pytest.mark.asyncio
    async def test_invalid_hostname(self) -> None:
        assert not (await _evaluator(set()).check("bogus")).passed


class TestEvaluator:
    @pytest.mark.asyncio
    async def test_unknown_guard_raises(self) -> None:
        with pytest.raises(GuardEvaluationError):
            await _evaluator(set()).is_eligible(make_channel(guards=("ghost",)))

    @pytest.mark.asyncio
    async def test_all_guards_must_pass(self) -> None:
        evaluator = _evaluator(set())
        assert not await evaluator.is_eligible(make_channel(guards=("local", "vpn")))

    @pytest.mark.asyncio
    async def test_results_cached_for_ttl(self) -> None:
        clock = FakeClock()
        lister = MagicMock(return_value={"tun0"})
        evaluator = GuardEvaluator(GUARDS, ttl_sec=30.0, clock=clock, interface_lister=lister)

        await evaluator.check("vpn")
        clock.advance(10)
        await evaluator.check("vpn")
        assert lister.call_count == 1

        clock.advance(30)
        await evaluator.check("vpn")
        assert lister.call_count == 2

    @pytest.mark.asyncio
    async def test_update_clears_cache(self) -> None:
        lister = MagicMock(return_value={"tun0"})
        evaluator = GuardEvaluator(GUARDS, clock=FakeClock(), interface_lister=lister)
        await evaluator.check("vpn")

        evaluator.update({"vpn": GuardDef(name="vpn", type="netIfUp", interface="wg0")})
        assert not (await evaluator.check("vpn")).passed
        assert lister.call_count == 2
