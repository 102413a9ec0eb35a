"""Entry point for Health Watch."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healthwatch.channels.registry import Channel, ChannelRegistry
from healthwatch.config import settings
from healthwatch.export import EXPORT_FORMATS, EXPORT_KINDS, render_export
from healthwatch.guards import GuardEvaluator
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.models import Sample, SampleOutcome
from healthwatch.monitor.runner import ChannelRunner
from healthwatch.probes.gateway import DefaultProbeGateway
from healthwatch.storage.memory import InMemoryStorage
from healthwatch.storage.sqlite import SQLiteStorage

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_OUTCOME_STYLE = {
    SampleOutcome.SUCCESS: "[green]up[/green]",
    SampleOutcome.FAILURE: "[red]down[/red]",
    SampleOutcome.SKIPPED: "[yellow]skipped[/yellow]",
}


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting Health Watch API Server", style="bold green"))
    uvicorn.run(
        "healthwatch.api.server:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


async def check_once(registry: ChannelRegistry) -> list[tuple[Channel, Sample | None]]:
    """Probe every enabled channel once, concurrently, without persisting anything."""
    config = registry.load()
    storage = InMemoryStorage()
    gateway = DefaultProbeGateway()
    runner = ChannelRunner(
        gateway, OutageLedger(storage), storage, guards=GuardEvaluator(config.guards),
    )
    channels = [c for c in config.channels if c.enabled]
    try:
        samples = await asyncio.gather(*(runner.run_once(c) for c in channels))
    finally:
        await gateway.aclose()
    return list(zip(channels, samples))


def run_check(config_path: str | None) -> int:
    registry = ChannelRegistry(config_path)
    with console.status("[bold green]Probing channels..."):
        results = asyncio.run(check_once(registry))

    table = Table(title=f"Health Watch — {registry.path}")
    table.add_column("Channel", style="bold")
    table.add_column("Type")
    table.add_column("Target", overflow="fold")
    table.add_column("Result")
    table.add_column("Latency", justify="right")
    table.add_column("Detail", overflow="fold")

    failures = 0
    for channel, sample in results:
        if sample is None:
            table.add_row(channel.label, channel.type, channel.target, "-", "-", "not run")
            continue
        if sample.outcome == SampleOutcome.FAILURE:
            failures += 1
        latency = f"{sample.latency_ms:.0f}ms" if sample.latency_ms is not None else "-"
        table.add_row(
            channel.label, channel.type, channel.target,
            _OUTCOME_STYLE[sample.outcome], latency, sample.error or "",
        )

    console.print(table)
    console.print(f"\n[dim]{len(results)} channels, {failures} failing[/dim]")
    return 1 if failures else 0


def list_channels(config_path: str | None) -> None:
    registry = ChannelRegistry(config_path)
    config = registry.load()

    table = Table(title=f"Channels — {registry.path}")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Target", overflow="fold")
    table.add_column("Interval", justify="right")
    table.add_column("Timeout", justify="right")
    table.add_column("Threshold", justify="right")
    table.add_column("Guards")
    table.add_column("Enabled")

    for c in config.channels:
        table.add_row(
            c.id, c.type, c.target, f"{c.interval_sec:g}s", f"{c.timeout_ms}ms",
            str(c.threshold), ", ".join(c.guards) or "-",
            "yes" if c.enabled else "[dim]no[/dim]",
        )
    console.print(table)
    if config.guards:
        console.print("[bold]Guards:[/bold] " + ", ".join(
            f"{g.name} ({g.type}: {g.interface or g.hostname})" for g in config.guards.values()
        ))


def run_export(
    config_path: str | None,
    fmt: str,
    kind: str,
    window_hours: float | None,
    output: str | None,
    db_path: str | None = None,
) -> int:
    """Export recorded history from the SQLite database."""
    config = ChannelRegistry(config_path).load()
    channels = [c for c in config.channels if c.enabled]
    since = time.time() - window_hours * 3600 if window_hours else None

    storage = SQLiteStorage(db_path)
    try:
        result = render_export(fmt, kind, channels, storage, OutageLedger(storage), since=since)
    finally:
        storage.close()
    text = json.dumps(result, indent=2) + "\n" if isinstance(result, dict) else result

    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"[green]Exported {fmt} ({len(channels)} channels) to {output}[/green]")
    else:
        sys.stdout.write(text)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Health Watch connectivity monitor")
    sub = parser.add_subparsers(dest="command")

    # Server mode
    sub.add_parser("serve", help="Start the API server and scheduler")

    check_parser = sub.add_parser("check", help="Probe every channel once and print the results")
    check_parser.add_argument("--config", help="Channel file (default: settings.config_path)")

    channels_parser = sub.add_parser("channels", help="List configured channels")
    channels_parser.add_argument("--config", help="Channel file (default: settings.config_path)")

    export_parser = sub.add_parser("export", help="Export recorded samples / outages")
    export_parser.add_argument("--config", help="Channel file (default: settings.config_path)")
    export_parser.add_argument("--db", help="SQLite database (default: settings.db_path)")
    export_parser.add_argument("--format", choices=EXPORT_FORMATS, default="json")
    export_parser.add_argument("--kind", choices=EXPORT_KINDS, default="samples", help="CSV only")
    export_parser.add_argument("--window-hours", type=float, help="Only the last N hours")
    export_parser.add_argument("--output", "-o", help="Write to a file instead of stdout")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "check":
        sys.exit(run_check(args.config))
    elif args.command == "channels":
        list_channels(args.config)
    elif args.command == "export":
        sys.exit(run_export(args.config, args.format, args.kind, args.window_hours, args.output, args.db))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
