"""Guard evaluation — environmental preconditions for running a probe.

A channel listing guards only runs when every one of them passes:

    guards:
      vpn:  { type: netIfUp, name: tun0 }
      corp: { type: dns, hostname: internal.corp.example }

Results are cached per guard for ``guard_cache_ttl_sec`` so a burst of
channels sharing a guard costs one lookup.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass

from healthwatch.channels.registry import Channel, GuardDef
from healthwatch.config import settings
from healthwatch.monitor.errors import GuardEvaluationError

logger = logging.getLogger(__name__)


@dataclass
class GuardResult:
    passed: bool
    message: str = ""


def _interface_names() -> set[str]:
    return {name for _, name in socket.if_nameindex()}


class GuardEvaluator:
    """Answers ``is_eligible(channel)`` for the ChannelRunner."""

    def __init__(
        self,
        guards: dict[str, GuardDef] | None = None,
        ttl_sec: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        interface_lister: Callable[[], set[str]] = _interface_names,
        dns_timeout_sec: float = 3.0,
    ) -> None:
        self._guards = dict(guards or {})
        self._ttl = settings.guard_cache_ttl_sec if ttl_sec is None else ttl_sec
        self._clock = clock
        self._list_interfaces = interface_lister
        self._dns_timeout = dns_timeout_sec
        self._cache: dict[str, tuple[float, GuardResult]] = {}

    def update(self, guards: dict[str, GuardDef]) -> None:
        """Replace guard definitions (config reload) and drop cached results."""
        self._guards = dict(guards)
        self._cache.clear()

    async def is_eligible(self, channel: Channel) -> bool:
        for name in channel.guards:
            result = await self.check(name)
            if not result.passed:
                logger.debug("Guard %s blocks channel %s: %s", name, channel.id, result.message)
                return False
        return True

    async def check(self, name: str) -> GuardResult:
        guard = self._guards.get(name)
        if guard is None:
            raise GuardEvaluationError(f"Unknown guard '{name}'")

        cached = self._cache.get(name)
        now = self._clock()
        if cached is not None and now - cached[0] < self._ttl:
            return cached[1]

        if guard.type == "netIfUp":
            result = self._check_interface(guard)
        elif guard.type == "dns":
            result = await self._check_dns(guard)
        else:
            raise GuardEvaluationError(f"Guard '{name}' has unsupported type '{guard.type}'")

        self._cache[name] = (now, result)
        return result

    def _check_interface(self, guard: GuardDef) -> GuardResult:
        try:
            names = self._list_interfaces()
        except OSError as e:
            raise GuardEvaluationError(f"Cannot list network interfaces: {e}") from e
        if guard.interface in names:
            return GuardResult(True, f"Interface {guard.interface} is up")
        return GuardResult(False, f"Interface '{guard.interface}' not found")

    async def _check_dns(self, guard: GuardDef) -> GuardResult:
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(loop.getaddrinfo(guard.hostname, None), timeout=self._dns_timeout)
        except asyncio.TimeoutError:
            return GuardResult(False, f"DNS lookup for {guard.hostname} timed out")
        except socket.gaierror as e:
            return GuardResult(False, f"DNS resolution failed for {guard.hostname}: {e}")
        return GuardResult(True, f"{guard.hostname} resolves")
