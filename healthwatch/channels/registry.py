"""Channel registry — loads healthwatch.yaml and provides typed models.

Single source of truth for what gets monitored.
The scheduler, guard evaluator and API all consume this.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from healthwatch.config import settings

logger = logging.getLogger(__name__)

PROBE_TYPES = ("http", "https", "tcp", "dns", "script")
GUARD_TYPES = ("netIfUp", "dns")

# Per-type key that may carry the target instead of the generic `target`
_TARGET_KEYS = {
    "http": "url",
    "https": "url",
    "tcp": "target",
    "dns": "hostname",
    "script": "command",
}


# ── Data models ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProbeDefaults:
    """Fallback values for channels that omit timing settings."""

    interval_sec: float = 60.0
    timeout_ms: int = 3000
    threshold: int = 3
    jitter_pct: float = 10.0

    @classmethod
    def from_settings(cls) -> ProbeDefaults:
        return cls(
            interval_sec=settings.default_interval_sec,
            timeout_ms=settings.default_timeout_ms,
            threshold=settings.default_threshold,
            jitter_pct=settings.default_jitter_pct,
        )


@dataclass(frozen=True)
class GuardDef:
    """A named precondition a channel can reference (e.g. "only on VPN")."""

    name: str
    type: str  # netIfUp | dns
    interface: str = ""  # for netIfUp
    hostname: str = ""  # for dns


@dataclass(frozen=True)
class Channel:
    """One monitored target. Immutable; replaced wholesale on reload."""

    id: str
    type: str  # http | https | tcp | dns | script
    target: str
    interval_sec: float = 60.0
    timeout_ms: int = 3000
    threshold: int = 3
    jitter_pct: float = 10.0
    guards: tuple[str, ...] = ()
    enabled: bool = True
    name: str = ""
    description: str = ""
    expected_status: tuple[int, ...] = ()  # empty = any 2xx/3xx

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass
class ChannelConfig:
    """Everything parsed from one config file."""

    defaults: ProbeDefaults = field(default_factory=ProbeDefaults)
    guards: dict[str, GuardDef] = field(default_factory=dict)
    channels: list[Channel] = field(default_factory=list)


# ── Registry ─────────────────────────────────────────────────────────────────


class ChannelRegistry:
    """Loads and caches channels from healthwatch.yaml."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path or settings.config_path)
        self._config = ChannelConfig(defaults=ProbeDefaults.from_settings())
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> ChannelConfig:
        """Parse the YAML file and return the resulting config."""
        if self._loaded and not force:
            return self._config

        if not self._path.exists():
            logger.warning("Channel config not found: %s", self._path)
            self._config = ChannelConfig(defaults=ProbeDefaults.from_settings())
            self._loaded = True
            return self._config

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._config

        self._config = parse_config(raw)
        self._loaded = True
        logger.info(
            "Loaded %d channels (%d guards) from %s",
            len(self._config.channels), len(self._config.guards), self._path,
        )
        return self._config

    def reload(self) -> ChannelConfig:
        """Force reload from disk."""
        return self.load(force=True)

    @property
    def channels(self) -> list[Channel]:
        return self.load().channels

    @property
    def guards(self) -> dict[str, GuardDef]:
        return self.load().guards

    def get(self, channel_id: str) -> Channel | None:
        return next((c for c in self.channels if c.id == channel_id), None)

    def enabled_channels(self) -> list[Channel]:
        return [c for c in self.channels if c.enabled]


# ── Parsers ──────────────────────────────────────────────────────────────────


def parse_config(raw: dict[str, Any]) -> ChannelConfig:
    """Build a ChannelConfig from an already-decoded YAML/JSON mapping."""
    defaults = _parse_defaults(raw.get("defaults") or {})

    guards: dict[str, GuardDef] = {}
    for name, g in (raw.get("guards") or {}).items():
        try:
            guards[name] = _parse_guard(name, g or {})
        except ValueError as e:
            logger.warning("Skipping malformed guard '%s': %s", name, e)

    channels: list[Channel] = []
    seen: set[str] = set()
    for entry in raw.get("channels") or []:
        try:
            channel = parse_channel(entry, defaults)
        except (ValueError, TypeError) as e:
            logger.warning("Skipping malformed channel entry: %s", e)
            continue
        if channel.id in seen:
            logger.warning("Duplicate channel id '%s' — keeping the first definition", channel.id)
            continue
        missing = [g for g in channel.guards if g not in guards]
        if missing:
            logger.warning("Channel '%s' references undefined guards: %s", channel.id, ", ".join(missing))
        seen.add(channel.id)
        channels.append(channel)

    return ChannelConfig(defaults=defaults, guards=guards, channels=channels)


def parse_channel(raw: dict[str, Any], defaults: ProbeDefaults | None = None) -> Channel:
    defaults = defaults or ProbeDefaults.from_settings()

    channel_id = str(raw.get("id", "")).strip()
    if not channel_id:
        raise ValueError("channel 'id' is required")

    probe_type = raw.get("type", "https")
    if probe_type not in PROBE_TYPES:
        raise ValueError(f"channel '{channel_id}': unsupported type '{probe_type}'")

    target = raw.get("target") or raw.get(_TARGET_KEYS[probe_type]) or ""
    if not target:
        raise ValueError(f"channel '{channel_id}': a target is required for {probe_type} probes")

    channel = Channel(
        id=channel_id,
        type=probe_type,
        target=str(target),
        interval_sec=float(raw.get("interval_sec", defaults.interval_sec)),
        timeout_ms=int(raw.get("timeout_ms", defaults.timeout_ms)),
        threshold=int(raw.get("threshold", defaults.threshold)),
        jitter_pct=float(raw.get("jitter_pct", defaults.jitter_pct)),
        guards=tuple(raw.get("guards") or ()),
        enabled=bool(raw.get("enabled", True)),
        name=raw.get("name", ""),
        description=raw.get("description", ""),
        expected_status=tuple(int(s) for s in raw.get("expected_status") or ()),
    )

    if channel.interval_sec <= 0:
        raise ValueError(f"channel '{channel_id}': interval_sec must be positive")
    if channel.timeout_ms <= 0:
        raise ValueError(f"channel '{channel_id}': timeout_ms must be positive")
    if channel.threshold < 1:
        raise ValueError(f"channel '{channel_id}': threshold must be >= 1")
    if not 0 <= channel.jitter_pct < 100:
        raise ValueError(f"channel '{channel_id}': jitter_pct must be in [0, 100)")
    return channel


def _parse_defaults(raw: dict[str, Any]) -> ProbeDefaults:
    base = ProbeDefaults.from_settings()
    return ProbeDefaults(
        interval_sec=float(raw.get("interval_sec", base.interval_sec)),
        timeout_ms=int(raw.get("timeout_ms", base.timeout_ms)),
        threshold=int(raw.get("threshold", base.threshold)),
        jitter_pct=float(raw.get("jitter_pct", base.jitter_pct)),
    )


def _parse_guard(name: str, raw: dict[str, Any]) -> GuardDef:
    guard_type = raw.get("type", "")
    if guard_type not in GUARD_TYPES:
        raise ValueError(f"unsupported guard type '{guard_type}'")
    if guard_type == "netIfUp" and not raw.get("name"):
        raise ValueError("interface name is required for netIfUp guard")
    if guard_type == "dns" and not raw.get("hostname"):
        raise ValueError("hostname is required for dns guard")
    return GuardDef(
        name=name,
        type=guard_type,
        interface=raw.get("name", ""),
        hostname=raw.get("hostname", ""),
    )


def channel_to_dict(c: Channel) -> dict[str, Any]:
    """Serialize a channel for the API."""
    return {
        "id": c.id,
        "name": c.label,
        "description": c.description,
        "type": c.type,
        "target": c.target,
        "interval_sec": c.interval_sec,
        "timeout_ms": c.timeout_ms,
        "threshold": c.threshold,
        "jitter_pct": c.jitter_pct,
        "guards": list(c.guards),
        "enabled": c.enabled,
        "expected_status": list(c.expected_status),
    }
