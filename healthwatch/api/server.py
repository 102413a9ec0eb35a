"""FastAPI server hosting the monitor."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthwatch import __version__
from healthwatch.api.routes import router
from healthwatch.channels.registry import ChannelRegistry
from healthwatch.config import settings
from healthwatch.guards import GuardEvaluator
from healthwatch.monitor.backoff import BackoffPolicy
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.ledger import OutageLedger
from healthwatch.monitor.ownership import Ownership
from healthwatch.monitor.runner import ChannelRunner, ProbeGateway
from healthwatch.monitor.scheduler import Scheduler
from healthwatch.notifications.manager import NotificationManager
from healthwatch.probes.gateway import DefaultProbeGateway
from healthwatch.storage.base import MonitorStorage
from healthwatch.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


def create_app(
    registry: ChannelRegistry | None = None,
    storage: MonitorStorage | None = None,
    gateway: ProbeGateway | None = None,
    ownership: Ownership | None = None,
    notifier: NotificationManager | None = None,
) -> FastAPI:
    """Build the app. Anything not supplied is created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Channel registry
        reg = registry or ChannelRegistry()
        config = reg.load()
        channels = [c for c in config.channels if c.enabled]
        app.state.registry = reg

        # Storage
        store = storage or SQLiteStorage()
        try:
            removed = store.cleanup_old(settings.retention_days)
            if removed:
                logger.info("Pruned %d samples older than %d days", removed, settings.retention_days)
        except Exception:
            logger.exception("Sample retention cleanup failed")
        app.state.storage = store

        # Engine
        events = EventBus()
        ledger = OutageLedger(store, events=events, channel_ids=[c.id for c in channels])
        guards = GuardEvaluator(config.guards)
        probe_gateway: Any = gateway or DefaultProbeGateway()
        runner = ChannelRunner(probe_gateway, ledger, store, guards=guards, events=events)
        runner.restore_open_outages()
        scheduler = Scheduler(
            runner,
            backoff=BackoffPolicy.from_settings(),
            is_owner=ownership or Ownership(True),
            events=events,
        )

        app.state.events = events
        app.state.ledger = ledger
        app.state.guards = guards
        app.state.runner = runner
        app.state.scheduler = scheduler

        # Notifications
        notify = notifier or NotificationManager()
        app.state.notifier = notify
        notify_task = asyncio.create_task(notify.run(events)) if notify.is_enabled else None

        try:
            await scheduler.start(channels)
            logger.info("Monitoring %d channels from %s", len(channels), reg.path)
        except Exception:
            logger.exception("Scheduler failed to start")

        yield

        # Shutdown
        await scheduler.stop_all()
        if notify_task is not None:
            notify_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await notify_task
        if notifier is None:
            await notify.aclose()
        if gateway is None:
            await probe_gateway.aclose()
        store.close()

    app = FastAPI(
        title="Health Watch",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app
