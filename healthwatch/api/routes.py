"""API routes for channels, outages and the live event stream.

Endpoints:
  GET  /api/channels                 — every channel with its runtime state
  GET  /api/channels/{id}            — channel detail + recent samples + outages
  GET  /api/channels/{id}/stats      — availability / MTTR / latency over a window
  POST /api/channels/{id}/pause      — stop probing a channel
  POST /api/channels/{id}/resume     — resume probing
  POST /api/channels/{id}/run        — run a probe now
  POST /api/channels/{id}/watch      — probe intensively for a while
  DELETE /api/channels/{id}/watch    — end the watch early
  POST /api/channels/{id}/snooze     — silence notifications for a channel
  DELETE /api/channels/{id}/snooze   — lift the snooze
  GET  /api/watches                  — active watch sessions
  GET  /api/notifications            — notifier configuration + snoozes
  GET  /api/outages                  — outage history (filterable)
  GET  /api/export                   — JSON / CSV / markdown export
  POST /api/reload                   — re-read healthwatch.yaml
  GET  /api/stream                   — SSE stream of monitor events
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from healthwatch.channels.registry import Channel, channel_to_dict
from healthwatch.export import render_export
from healthwatch.monitor.errors import NotFoundError
from healthwatch.monitor.models import ChannelRuntimeState
from healthwatch.monitor.stats import channel_stats

logger = logging.getLogger(__name__)

router = APIRouter()


def _channel_or_404(request: Request, channel_id: str) -> Channel:
    channel = request.app.state.scheduler.get_channel(channel_id)
    if channel is None:
        raise HTTPException(status_code=404, detail=f"Channel not found: {channel_id}")
    return channel


def _channel_view(request: Request, channel: Channel) -> dict[str, Any]:
    runner = request.app.state.runner
    ledger = request.app.state.ledger
    schedule = request.app.state.scheduler.schedule_info().get(channel.id, {})

    state = runner.get_channel_state(channel.id) or ChannelRuntimeState(channel_id=channel.id)
    open_outage = ledger.get_open(channel.id)

    d = channel_to_dict(channel)
    d["state"] = state.to_dict()
    d["next_run"] = schedule.get("next_run")
    d["open_outage"] = open_outage.to_dict() if open_outage else None
    return d


# ── Channels ─────────────────────────────────────────────────────────────────


@router.get("/channels")
async def list_channels(request: Request) -> dict[str, Any]:
    scheduler = request.app.state.scheduler
    channels = [_channel_view(request, c) for c in scheduler.channels()]
    summary: dict[str, int] = {}
    for c in channels:
        s = c["state"]["state"]
        summary[s] = summary.get(s, 0) + 1
    return {"channels": channels, "summary": summary, "scheduler_active": scheduler.is_active}


@router.get("/channels/{channel_id}")
async def get_channel(channel_id: str, request: Request, limit: int = 50) -> dict[str, Any]:
    """Channel detail with its latest samples and outage history."""
    channel = _channel_or_404(request, channel_id)
    storage = request.app.state.storage
    ledger = request.app.state.ledger

    d = _channel_view(request, channel)
    d["samples"] = [s.to_dict() for s in storage.recent_samples(channel_id, limit)]
    d["outages"] = [o.to_dict() for o in ledger.list_outages(channel_id)[:20]]
    return d


@router.get("/channels/{channel_id}/stats")
async def get_channel_stats(channel_id: str, request: Request, window_hours: float = 24.0) -> dict[str, Any]:
    _channel_or_404(request, channel_id)
    storage = request.app.state.storage
    ledger = request.app.state.ledger

    now = time.time()
    since = now - window_hours * 3600
    samples = storage.samples_since(channel_id, since)
    outages = ledger.list_outages(channel_id, since)
    return {
        "channel_id": channel_id,
        "window_hours": window_hours,
        **channel_stats(samples, outages, now=now),
    }


@router.post("/channels/{channel_id}/pause")
async def pause_channel(channel_id: str, request: Request) -> dict[str, Any]:
    try:
        request.app.state.scheduler.pause(channel_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"channel_id": channel_id, "paused": True}


@router.post("/channels/{channel_id}/resume")
async def resume_channel(channel_id: str, request: Request) -> dict[str, Any]:
    try:
        request.app.state.scheduler.resume(channel_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"channel_id": channel_id, "paused": False}


@router.post("/channels/{channel_id}/run")
async def run_channel(channel_id: str, request: Request) -> dict[str, Any]:
    """Trigger an immediate probe. ``ran`` is false when paused, busy or passive."""
    try:
        sample = await request.app.state.scheduler.run_now(channel_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "channel_id": channel_id,
        "ran": sample is not None,
        "sample": sample.to_dict() if sample else None,
    }


# ── Watches ──────────────────────────────────────────────────────────────────


@router.post("/channels/{channel_id}/watch")
async def start_watch(
    channel_id: str,
    request: Request,
    duration: str = "1h",
    interval_sec: float | None = None,
) -> dict[str, Any]:
    """Probe a channel every ``interval_sec`` for ``duration`` (1h, 12h, forever or seconds)."""
    try:
        session = request.app.state.scheduler.start_watch(channel_id, duration, interval_sec)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"channel_id": channel_id, "watch": session.to_dict()}


@router.delete("/channels/{channel_id}/watch")
async def stop_watch(channel_id: str, request: Request) -> dict[str, Any]:
    try:
        stopped = request.app.state.scheduler.stop_watch(channel_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"channel_id": channel_id, "stopped": stopped}


@router.get("/watches")
async def list_watches(request: Request) -> dict[str, Any]:
    watches = request.app.state.scheduler.watches.active()
    return {"watches": [w.to_dict() for w in watches]}


# ── Notifications ────────────────────────────────────────────────────────────


@router.get("/notifications")
async def notification_status(request: Request) -> dict[str, Any]:
    return request.app.state.notifier.status()


@router.post("/channels/{channel_id}/snooze")
async def snooze_channel(channel_id: str, request: Request, minutes: float = 60.0) -> dict[str, Any]:
    _channel_or_404(request, channel_id)
    if minutes <= 0:
        raise HTTPException(status_code=400, detail="minutes must be positive")
    until = request.app.state.notifier.snooze(channel_id, minutes * 60)
    return {"channel_id": channel_id, "snoozed_until": until}


@router.delete("/channels/{channel_id}/snooze")
async def unsnooze_channel(channel_id: str, request: Request) -> dict[str, Any]:
    _channel_or_404(request, channel_id)
    return {"channel_id": channel_id, "unsnoozed": request.app.state.notifier.unsnooze(channel_id)}


# ── Outages ──────────────────────────────────────────────────────────────────


@router.get("/outages")
async def list_outages(
    request: Request,
    channel_id: str | None = None,
    since: float | None = None,
    open_only: bool = False,
    limit: int = 100,
) -> dict[str, Any]:
    ledger = request.app.state.ledger
    if open_only:
        outages = [o for o in ledger.open_outages() if channel_id is None or o.channel_id == channel_id]
    else:
        outages = ledger.list_outages(channel_id, since)
    return {
        "outages": [o.to_dict() for o in outages[:limit]],
        "open": len(ledger.open_outages()),
    }


@router.get("/export", response_model=None)
async def export_data(
    request: Request,
    format: str = "json",
    kind: str = "samples",
    window_hours: float | None = None,
    channel_id: str | None = None,
) -> dict[str, Any] | PlainTextResponse:
    """Export history. CSV covers ``kind`` (samples or outages); JSON and markdown cover both."""
    state = request.app.state
    channels = state.scheduler.channels()
    if channel_id is not None:
        channels = [_channel_or_404(request, channel_id)]
    since = time.time() - window_hours * 3600 if window_hours else None

    try:
        result = render_export(format, kind, channels, state.storage, state.ledger, since=since)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if isinstance(result, dict):
        return result
    media_type = "text/csv" if format == "csv" else "text/markdown"
    ext = "csv" if format == "csv" else "md"
    name = f"healthwatch-{kind}.{ext}" if format == "csv" else f"healthwatch-report.{ext}"
    return PlainTextResponse(
        result,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


# ── Config ───────────────────────────────────────────────────────────────────


@router.post("/reload")
async def reload_config(request: Request) -> dict[str, Any]:
    """Re-read the channel file and swap the scheduler's channel set."""
    state = request.app.state
    config = state.registry.reload()
    enabled = [c for c in config.channels if c.enabled]

    state.guards.update(config.guards)
    state.ledger.rehydrate([c.id for c in enabled])
    state.runner.restore_open_outages()
    state.scheduler.reload_config(enabled)
    return {"channels": len(enabled), "guards": len(config.guards)}


# ── SSE stream ───────────────────────────────────────────────────────────────


@router.get("/stream")
async def event_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of samples, state changes and outages."""
    events = request.app.state.events
    queue = events.subscribe()

    async def event_generator():
        try:
            snapshot = request.app.state.runner.snapshot()
            yield f"event: init\ndata: {json.dumps(snapshot)}\n\n"

            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=30)
                    yield f"event: {event.kind.value}\ndata: {json.dumps(event.to_dict())}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            events.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
