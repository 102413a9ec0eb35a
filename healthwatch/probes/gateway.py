"""Default probe gateway — async HTTP(S), TCP, DNS and script probes.

Every probe resolves to a ProbeResult; network errors, bad targets and
timeouts become failed results rather than exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from collections.abc import Awaitable, Callable

import httpx

from healthwatch.channels.registry import Channel
from healthwatch.config import settings
from healthwatch.monitor.models import ProbeResult

logger = logging.getLogger(__name__)


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)


def _split_host_port(target: str) -> tuple[str, int]:
    host, sep, port_str = target.rpartition(":")
    if not sep or not host:
        raise ValueError("Invalid target format. Expected host:port")
    port = int(port_str)
    if not 1 <= port <= 65535:
        raise ValueError(f"Port {port} out of range")
    return host.strip("[]"), port


# ── Probes ───────────────────────────────────────────────────────────────────


async def probe_http(
    client: httpx.AsyncClient,
    url: str,
    timeout_ms: int,
    expected_status: tuple[int, ...] = (),
) -> ProbeResult:
    """HTTP(S) probe — HEAD first, GET when the server refuses HEAD."""
    t0 = time.perf_counter()
    try:
        resp = await client.head(url, timeout=timeout_ms / 1000)
        if resp.status_code in (405, 501):
            resp = await client.get(url, timeout=timeout_ms / 1000)
        latency = _elapsed_ms(t0)

        if expected_status:
            ok = resp.status_code in expected_status
            msg = None if ok else f"Expected {list(expected_status)}, got {resp.status_code}"
        else:
            ok = 200 <= resp.status_code < 400
            msg = None if ok else f"HTTP {resp.status_code}"

        return ProbeResult(
            success=ok, latency_ms=latency, error=msg,
            details={"status_code": resp.status_code},
        )
    except httpx.TimeoutException:
        return ProbeResult(
            success=False, latency_ms=_elapsed_ms(t0),
            error=f"Connection timed out ({timeout_ms}ms)",
        )
    except httpx.ConnectError as e:
        return ProbeResult(success=False, latency_ms=_elapsed_ms(t0), error=f"Connection error: {e}")
    except httpx.HTTPError as e:
        return ProbeResult(
            success=False, latency_ms=_elapsed_ms(t0),
            error=f"HTTP error: {type(e).__name__}: {e}",
        )


async def probe_tcp(target: str, timeout_ms: int) -> ProbeResult:
    """Raw TCP connect to ``host:port``."""
    try:
        host, port = _split_host_port(target)
    except ValueError as e:
        return ProbeResult(success=False, error=str(e))

    t0 = time.perf_counter()
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        return ProbeResult(success=False, latency_ms=_elapsed_ms(t0), error="Connection timeout")
    except OSError as e:
        return ProbeResult(
            success=False, latency_ms=_elapsed_ms(t0),
            error=f"TCP connect failed: {type(e).__name__}: {e}",
        )
    latency = _elapsed_ms(t0)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return ProbeResult(success=True, latency_ms=latency, details={"host": host, "port": port})


async def probe_dns(hostname: str, timeout_ms: int) -> ProbeResult:
    """Resolve ``hostname`` via the system resolver (run off the event loop)."""
    loop = asyncio.get_running_loop()
    t0 = time.perf_counter()
    try:
        addrs = await asyncio.wait_for(loop.getaddrinfo(hostname, None), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        return ProbeResult(success=False, latency_ms=_elapsed_ms(t0), error="DNS resolution timeout")
    except socket.gaierror as e:
        return ProbeResult(success=False, latency_ms=_elapsed_ms(t0), error=f"DNS resolution failed: {e}")

    ips = sorted({a[4][0] for a in addrs})
    return ProbeResult(success=True, latency_ms=_elapsed_ms(t0), details={"ips": ips})


async def probe_script(command: str, timeout_ms: int) -> ProbeResult:
    """Run a shell command; exit code 0 is success."""
    t0 = time.perf_counter()
    proc = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return ProbeResult(success=False, latency_ms=_elapsed_ms(t0), error=f"Script timed out ({timeout_ms}ms)")

    latency = _elapsed_ms(t0)
    details = {
        "exit_code": proc.returncode,
        "stdout": stdout.decode(errors="replace").strip()[-500:],
        "stderr": stderr.decode(errors="replace").strip()[-500:],
    }
    if proc.returncode == 0:
        return ProbeResult(success=True, latency_ms=latency, details=details)
    return ProbeResult(
        success=False, latency_ms=latency,
        error=f"Process exited with code {proc.returncode}", details=details,
    )


# ── Gateway ──────────────────────────────────────────────────────────────────


class DefaultProbeGateway:
    """Dispatches a channel to the probe for its type.

    Holds one pooled ``httpx.AsyncClient``; call ``aclose()`` on shutdown.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        script_enabled: bool | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            verify=True,
            headers={"User-Agent": settings.http_user_agent},
        )
        self._script_enabled = settings.script_probes_enabled if script_enabled is None else script_enabled
        self._dispatch: dict[str, Callable[[Channel, int], Awaitable[ProbeResult]]] = {
            "http": self._http,
            "https": self._http,
            "tcp": lambda c, t: probe_tcp(c.target, t),
            "dns": lambda c, t: probe_dns(c.target, t),
            "script": self._script,
        }

    async def probe(self, channel: Channel, timeout_ms: int) -> ProbeResult:
        runner = self._dispatch.get(channel.type)
        if runner is None:
            return ProbeResult(success=False, error=f"Unknown probe type: {channel.type}")
        try:
            return await runner(channel, timeout_ms)
        except Exception as e:
            logger.exception("Probe %s (%s) crashed", channel.id, channel.type)
            return ProbeResult(success=False, error=f"Error: {type(e).__name__}: {e}")

    async def _http(self, channel: Channel, timeout_ms: int) -> ProbeResult:
        return await probe_http(self._client, channel.target, timeout_ms, channel.expected_status)

    async def _script(self, channel: Channel, timeout_ms: int) -> ProbeResult:
        if not self._script_enabled:
            return ProbeResult(success=False, error="Script probes are disabled")
        return await probe_script(channel.target, timeout_ms)

    async def aclose(self) -> None:
        await self._client.aclose()
