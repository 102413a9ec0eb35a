"""Export samples and outages as JSON, CSV or a markdown report."""

from __future__ import annotations

import csv
import io
import time
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from healthwatch import __version__
from healthwatch.channels.registry import Channel, channel_to_dict
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.models import Outage, Sample
from healthwatch.monitor.stats import channel_stats
from healthwatch.notifications.manager import format_duration
from healthwatch.storage.base import MonitorStorage

EXPORT_FORMATS = ("json", "csv", "markdown")
EXPORT_KINDS = ("samples", "outages")

SAMPLE_COLUMNS = ["timestamp", "channel_id", "channel_name", "channel_type", "outcome", "latency_ms", "error"]
OUTAGE_COLUMNS = [
    "id", "channel_id", "reason", "failure_count", "first_failure_time", "start_time",
    "end_time", "duration_sec", "actual_duration_sec",
]


def _iso(ts: float | None) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def build_export(
    channels: Iterable[Channel],
    storage: MonitorStorage,
    ledger: OutageLedger,
    since: float | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Everything known about ``channels`` since ``since``, with per-channel statistics."""
    now = time.time() if now is None else now
    data: dict[str, Any] = {}
    for channel in channels:
        samples = storage.samples_since(channel.id, since or 0.0)
        outages = ledger.list_outages(channel.id, since)
        data[channel.id] = {
            "channel": channel_to_dict(channel),
            "samples": [s.to_dict() for s in samples],
            "outages": [o.to_dict() for o in outages],
            "statistics": channel_stats(samples, outages, now=now),
        }
    return {
        "metadata": {
            "exported_at": _iso(now),
            "version": __version__,
            "window_start": _iso(since) or None,
        },
        "channels": data,
    }


def samples_csv(channels: Iterable[Channel], samples: dict[str, Sequence[Sample]]) -> str:
    """One row per sample, oldest first within each channel."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(SAMPLE_COLUMNS)
    for channel in channels:
        for s in samples.get(channel.id, ()):
            writer.writerow([
                _iso(s.timestamp), channel.id, channel.name, channel.type, s.outcome.value,
                "" if s.latency_ms is None else s.latency_ms, s.error or "",
            ])
    return buf.getvalue()


def outages_csv(outages: Iterable[Outage]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(OUTAGE_COLUMNS)
    for o in outages:
        writer.writerow([
            o.id, o.channel_id, o.reason, o.failure_count, _iso(o.first_failure_time),
            _iso(o.start_time), _iso(o.end_time),
            "" if o.duration is None else o.duration,
            "" if o.actual_duration is None else o.actual_duration,
        ])
    return buf.getvalue()


def _ms(value: float | None) -> str:
    return "-" if value is None else f"{round(value)}ms"


def markdown_report(export: dict[str, Any]) -> str:
    """Human-readable summary of a ``build_export`` result."""
    meta = export["metadata"]
    channels = export["channels"]
    lines = [
        "# Health Watch Report",
        f"Generated: {meta['exported_at']}",
        "",
        f"- **Window start**: {meta['window_start'] or 'all history'}",
        f"- **Channels**: {len(channels)}",
        "",
        "## Summary",
        "",
        "| Channel | Availability | Outages | MTTR | Longest | p95 Latency | Top Failure |",
        "|---------|--------------|---------|------|---------|-------------|-------------|",
    ]
    for cid, entry in channels.items():
        st = entry["statistics"]
        top = st["top_failure_reason"] or "-"
        if len(top) > 40:
            top = top[:37] + "..."
        lines.append(
            f"| {cid} | {st['availability_pct']:.1f}% | {st['outage_count']} "
            f"| {format_duration(st['mttr_sec']) if st['mttr_sec'] is not None else '-'} "
            f"| {format_duration(st['longest_outage_sec']) if st['longest_outage_sec'] is not None else '-'} "
            f"| {_ms(st['latency_ms']['p95'])} | {top} |"
        )

    lines += [
        "",
        "## Latency",
        "",
        "| Channel | Min | p50 | p95 | Max | Avg |",
        "|---------|-----|-----|-----|-----|-----|",
    ]
    for cid, entry in channels.items():
        lat = entry["statistics"]["latency_ms"]
        lines.append(
            f"| {cid} | {_ms(lat['min'])} | {_ms(lat['p50'])} | {_ms(lat['p95'])} "
            f"| {_ms(lat['max'])} | {_ms(lat['avg'])} |"
        )

    outages = sorted(
        (o for entry in channels.values() for o in entry["outages"]),
        key=lambda o: o["start_time"],
    )
    lines += ["", "## Outage Log", ""]
    if not outages:
        lines.append("No outages in this window.")
    else:
        lines += [
            "| Channel | Impact start | Confirmed | End | Impact | Reason |",
            "|---------|--------------|-----------|-----|--------|--------|",
        ]
        for o in outages:
            end = _iso(o["end_time"]) if o["end_time"] is not None else "Ongoing"
            impact = format_duration(o["actual_duration"]) if o["actual_duration"] is not None else "-"
            lines.append(
                f"| {o['channel_id']} | {_iso(o['first_failure_time'])} | {_iso(o['confirmed_at'])} "
                f"| {end} | {impact} | {o['reason']} |"
            )
    return "\n".join(lines) + "\n"


def render_export(
    fmt: str,
    kind: str,
    channels: Sequence[Channel],
    storage: MonitorStorage,
    ledger: OutageLedger,
    since: float | None = None,
    now: float | None = None,
) -> str | dict[str, Any]:
    """Render an export. JSON comes back as a dict, CSV and markdown as text."""
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format: {fmt}")
    if kind not in EXPORT_KINDS:
        raise ValueError(f"Unknown export kind: {kind}")

    if fmt == "csv":
        if kind == "outages":
            wanted = {c.id for c in channels}
            return outages_csv(o for o in ledger.list_outages(None, since) if o.channel_id in wanted)
        samples = {c.id: storage.samples_since(c.id, since or 0.0) for c in channels}
        return samples_csv(channels, samples)

    export = build_export(channels, storage, ledger, since=since, now=now)
    if fmt == "markdown":
        return markdown_report(export)
    return export
