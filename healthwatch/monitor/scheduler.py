"""Channel scheduler — one timer per channel, drives the ChannelRunner.

First runs are jittered within ±jitter_pct of the interval so channels do
not probe in lockstep. After every run the next delay comes from the
backoff policy (plain interval unless the channel is offline).

A watched channel ignores both and runs at its watch interval.

Only the owning process fires timers; a passive scheduler keeps its
channel table but never arms anything.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from healthwatch.channels.registry import Channel
from healthwatch.monitor.backoff import BackoffPolicy, jittered
from healthwatch.monitor.errors import InvariantError, NotFoundError
from healthwatch.monitor.events import EventBus
from healthwatch.monitor.models import EventKind, MonitorEvent, Sample
from healthwatch.monitor.runner import ChannelRunner
from healthwatch.monitor.watch import WatchManager, WatchSession

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    channel: Channel
    timer: asyncio.TimerHandle | None = None
    task: asyncio.Task[Sample | None] | None = None
    next_run: float | None = None
    last_delay: float | None = None

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


class Scheduler:
    """Schedules channel runs on the running event loop.

    Lifecycle:
        scheduler = Scheduler(runner)
        await scheduler.start(channels)
        ...
        await scheduler.stop_all()
    """

    def __init__(
        self,
        runner: ChannelRunner,
        backoff: BackoffPolicy | None = None,
        is_owner: Callable[[], bool] | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        watches: WatchManager | None = None,
    ) -> None:
        self.runner = runner
        self.backoff = backoff or BackoffPolicy.from_settings()
        self._is_owner = is_owner or (lambda: True)
        self.events = events
        self._clock = clock
        self._rng = rng
        self.watches = watches or WatchManager(events=events, clock=clock)
        self._slots: dict[str, _Slot] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False
        self._active = False

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self, channels: Iterable[Channel]) -> None:
        """Register channels and, if this process owns scheduling, arm their timers."""
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        self._started = True
        self._slots = {c.id: _Slot(channel=c) for c in channels if c.enabled}

        if not self._is_owner():
            logger.info("Scheduler passive: another process owns monitoring (%d channels)", len(self._slots))
            return
        self._activate()

    async def stop_all(self) -> None:
        """Cancel every timer and in-flight run."""
        self._started = False
        tasks = self._deactivate()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def refresh_ownership(self) -> bool:
        """Re-query ownership and activate or go passive accordingly."""
        owner = self._is_owner()
        if not self._started:
            return owner
        if owner and not self._active:
            self._activate()
        elif not owner and self._active:
            tasks = self._deactivate()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Scheduler passive: ownership lost")
        return owner

    def _activate(self) -> None:
        self._active = True
        for slot in self._slots.values():
            if self.runner.is_paused(slot.channel.id):
                continue
            self._arm(slot, jittered(slot.channel.interval_sec, slot.channel.jitter_pct, self._rng))
        logger.info("Scheduler active: %d channels", len(self._slots))

    def _deactivate(self) -> list[asyncio.Task[Any]]:
        self._active = False
        tasks = []
        for slot in self._slots.values():
            self._disarm(slot)
            if slot.in_flight:
                slot.task.cancel()
                tasks.append(slot.task)
            slot.task = None
        return tasks

    @property
    def is_active(self) -> bool:
        return self._active

    # ── Timers ───────────────────────────────────────────────────────────

    def _arm(self, slot: _Slot, delay: float) -> None:
        self._disarm(slot)
        assert self._loop is not None
        slot.timer = self._loop.call_later(delay, self._fire, slot.channel.id)
        slot.next_run = self._clock() + delay
        slot.last_delay = delay

    @staticmethod
    def _disarm(slot: _Slot) -> None:
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        slot.next_run = None

    def _fire(self, channel_id: str) -> None:
        slot = self._slots.get(channel_id)
        if slot is None:
            return
        slot.timer = None
        slot.next_run = None

        if not self._active:
            return
        if not self._is_owner():
            logger.info("Ownership lost — scheduler going passive")
            self._deactivate()
            return
        if self.runner.is_paused(channel_id):
            return
        if slot.in_flight or self.runner.is_running(channel_id):
            # The in-flight run reschedules when it completes
            logger.debug("Channel %s still running — timer fire skipped", channel_id)
            return

        slot.task = asyncio.ensure_future(self._run(channel_id), loop=self._loop)

    async def _run(self, channel_id: str) -> Sample | None:
        slot = self._slots[channel_id]
        sample: Sample | None = None
        try:
            sample = await self.runner.run_once(slot.channel)
        except asyncio.CancelledError:
            logger.debug("Run for %s cancelled", channel_id)
            raise
        except InvariantError as e:
            logger.error("Invariant violation on channel %s: %s", channel_id, e)
            self._diagnostic(channel_id, str(e))
        except Exception:
            logger.exception("Unexpected error running channel %s", channel_id)
            self._diagnostic(channel_id, "unexpected error during run")

        current = self._slots.get(channel_id)
        if current is not slot:
            # Removed (or replaced) by a config reload while in flight
            if current is None:
                self.runner.forget(channel_id)
            elif current.timer is None and not current.in_flight:
                # The new slot's first fire was skipped while this run held the channel
                self.schedule_next(channel_id)
            return sample

        self.schedule_next(channel_id)
        return sample

    def schedule_next(self, channel_id: str) -> float | None:
        """Arm the channel's regular timer based on its current state. Returns the delay."""
        slot = self._slots.get(channel_id)
        if slot is None or not self._active or self.runner.is_paused(channel_id):
            return None
        delay = self.watches.interval_for(channel_id)
        if delay is None:
            delay = self.backoff.next_delay(slot.channel.interval_sec, self.runner.state_for(channel_id))
        self._arm(slot, delay)
        logger.debug("Channel %s next run in %.1fs", channel_id, delay)
        return delay

    # ── Control surface ──────────────────────────────────────────────────

    def pause(self, channel_id: str) -> None:
        """Stop scheduling a channel and abort any probe in flight."""
        slot = self._require(channel_id)
        self.runner.pause(channel_id)
        self._disarm(slot)
        if slot.in_flight:
            slot.task.cancel()
        slot.task = None
        logger.info("Channel %s paused", channel_id)

    def resume(self, channel_id: str) -> None:
        slot = self._require(channel_id)
        self.runner.resume(channel_id)
        logger.info("Channel %s resumed", channel_id)
        if self._active and not slot.in_flight:
            self.schedule_next(channel_id)

    async def run_now(self, channel_id: str) -> Sample | None:
        """Run a channel out of band; its regular timer restarts from this run."""
        slot = self._require(channel_id)
        if not self._active:
            logger.info("Run-now for %s ignored: scheduler is not active", channel_id)
            return None
        if self.runner.is_paused(channel_id):
            return None
        if slot.in_flight or self.runner.is_running(channel_id):
            logger.info("Run-now for %s ignored: a run is already in flight", channel_id)
            return None

        self._disarm(slot)
        task = asyncio.ensure_future(self._run(channel_id))
        slot.task = task
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    def start_watch(
        self,
        channel_id: str,
        duration: str | float | None = "1h",
        interval_sec: float | None = None,
    ) -> WatchSession:
        """Probe a channel at a fast interval until the watch ends.

        Without ``interval_sec`` the watch uses the default watch interval,
        or the channel's own interval when that is already shorter.
        """
        slot = self._require(channel_id)
        if interval_sec is None:
            interval_sec = min(slot.channel.interval_sec, self.watches.default_interval_sec)
        session = self.watches.start(channel_id, duration, interval_sec)
        self._reschedule(slot)
        return session

    def stop_watch(self, channel_id: str) -> bool:
        slot = self._require(channel_id)
        if self.watches.stop(channel_id) is None:
            return False
        self._reschedule(slot)
        return True

    def _reschedule(self, slot: _Slot) -> None:
        if self._active and not slot.in_flight:
            self.schedule_next(slot.channel.id)

    def reload_config(self, channels: Iterable[Channel]) -> None:
        """Swap the channel set in one step.

        Removed channels lose their timers; a run already in flight finishes
        but is not rescheduled. Changed channels keep their runtime state.
        """
        new = {c.id: c for c in channels if c.enabled}

        for channel_id in list(self._slots):
            if channel_id in new:
                continue
            slot = self._slots.pop(channel_id)
            self._disarm(slot)
            self.watches.stop(channel_id, reason="removed")
            if not slot.in_flight:
                self.runner.forget(channel_id)
            logger.info("Channel %s removed from schedule", channel_id)

        for channel_id, channel in new.items():
            slot = self._slots.get(channel_id)
            if slot is None:
                slot = _Slot(channel=channel)
                self._slots[channel_id] = slot
                if self._active and not self.runner.is_paused(channel_id):
                    self._arm(slot, jittered(channel.interval_sec, channel.jitter_pct, self._rng))
                logger.info("Channel %s added to schedule", channel_id)
                continue

            old = slot.channel
            slot.channel = channel
            if old.interval_sec != channel.interval_sec and slot.timer is not None:
                self._arm(slot, jittered(channel.interval_sec, channel.jitter_pct, self._rng))

        logger.info("Configuration reloaded: %d channels scheduled", len(self._slots))

    # ── Introspection ────────────────────────────────────────────────────

    def channels(self) -> list[Channel]:
        return [s.channel for s in self._slots.values()]

    def get_channel(self, channel_id: str) -> Channel | None:
        slot = self._slots.get(channel_id)
        return slot.channel if slot else None

    def schedule_info(self) -> dict[str, dict[str, Any]]:
        info: dict[str, dict[str, Any]] = {}
        for cid, slot in self._slots.items():
            watch = self.watches.get(cid)
            info[cid] = {
                "next_run": slot.next_run,
                "last_delay_sec": slot.last_delay,
                "is_running": slot.in_flight,
                "is_paused": self.runner.is_paused(cid),
                "watch": watch.to_dict() if watch else None,
            }
        return info

    def _require(self, channel_id: str) -> _Slot:
        slot = self._slots.get(channel_id)
        if slot is None:
            raise NotFoundError(f"Unknown channel '{channel_id}'")
        return slot

    def _diagnostic(self, channel_id: str, message: str) -> None:
        if self.events is not None:
            self.events.publish(MonitorEvent(
                kind=EventKind.DIAGNOSTIC, channel_id=channel_id,
                timestamp=self._clock(), data={"message": message},
            ))
