"""Cancellable delayed-task scheduling for recurring syncs.

Provides:
- ScheduledRun: handle for one pending run (cancel, inspect, await).
- TaskScheduler: abstract scheduler keyed by a string; scheduling the same
  key again re-arms it (the previous run is cancelled).
- APSchedulerTaskScheduler: production scheduler backed by an APScheduler
  AsyncIOScheduler with one DateTrigger job per key.
- VirtualClock / ManualTaskScheduler: deterministic time for tests and for
  hosts that want to drive scheduling themselves. Runs fire only when
  advance() moves the clock past their due time.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = structlog.get_logger(__name__)

ScheduledCallback = Callable[[], Awaitable[None]]


class ScheduledRun:
    """Handle for a single scheduled callback.

    A run is either pending, running, finished, or cancelled. Only a
    pending run can be cancelled; wait() returns once the run finished or
    was cancelled.
    """

    def __init__(
        self,
        key: str,
        run_at: datetime,
        callback: ScheduledCallback,
        on_cancel: Callable[[ScheduledRun], None] | None = None,
    ) -> None:
        self.key = key
        self.run_at = run_at
        self._callback = callback
        self._on_cancel = on_cancel
        self._cancelled = False
        self._started = False
        self._finished = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def started(self) -> bool:
        return self._started

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    def cancel(self) -> bool:
        """Cancel the run if it has not started. Returns True if cancelled."""
        if self._started or self._cancelled:
            return False
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)
        self._finished.set()
        return True

    async def wait(self) -> None:
        """Wait until the run has finished or was cancelled."""
        await self._finished.wait()

    async def fire(self) -> None:
        """Execute the callback once. Errors are logged, never raised."""
        if self._cancelled or self._started:
            return
        self._started = True
        try:
            await self._callback()
        except Exception:
            logger.exception("scheduler.run_failed", key=self.key)
        finally:
            self._finished.set()


class TaskScheduler(ABC):
    """Keyed delayed-task scheduler."""

    @abstractmethod
    def schedule(self, key: str, delay_seconds: float, callback: ScheduledCallback) -> ScheduledRun:
        """Schedule callback after delay_seconds, replacing any pending run for key."""
        ...

    @abstractmethod
    def get(self, key: str) -> ScheduledRun | None:
        """Return the pending run for key, if any."""
        ...

    def cancel(self, key: str) -> bool:
        """Cancel the pending run for key. Returns True if one was cancelled."""
        run = self.get(key)
        if run is None:
            return False
        return run.cancel()

    @abstractmethod
    def pending(self) -> list[ScheduledRun]:
        """All runs that have not fired yet."""
        ...

    def shutdown(self) -> None:
        """Cancel every pending run."""
        for run in self.pending():
            run.cancel()


# ── APScheduler-backed scheduler ────────────────────────────────────────────


class APSchedulerTaskScheduler(TaskScheduler):
    """TaskScheduler backed by an APScheduler AsyncIOScheduler.

    The underlying scheduler is started lazily on first use so that it binds
    to the running event loop.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._runs: dict[str, ScheduledRun] = {}

    def _ensure_started(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("scheduler.started")

    def _remove_job(self, run: ScheduledRun) -> None:
        if self._runs.get(run.key) is run:
            del self._runs[run.key]
        try:
            self._scheduler.remove_job(run.key)
        except JobLookupError:
            pass

    def schedule(self, key: str, delay_seconds: float, callback: ScheduledCallback) -> ScheduledRun:
        self.cancel(key)
        self._ensure_started()

        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
        run = ScheduledRun(key, run_at, callback, on_cancel=self._remove_job)

        async def _job() -> None:
            if self._runs.get(key) is run:
                del self._runs[key]
            await run.fire()

        self._scheduler.add_job(
            _job,
            trigger=DateTrigger(run_date=run_at),
            id=key,
            name=f"crm sync {key}",
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._runs[key] = run
        logger.debug("scheduler.run_scheduled", key=key, delay_seconds=delay_seconds)
        return run

    def get(self, key: str) -> ScheduledRun | None:
        return self._runs.get(key)

    def pending(self) -> list[ScheduledRun]:
        return list(self._runs.values())

    def shutdown(self) -> None:
        super().shutdown()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("scheduler.stopped")


# ── Virtual time ────────────────────────────────────────────────────────────


class VirtualClock:
    """Manually advanced clock exposing wall time and monotonic seconds."""

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        self._elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        """Sleep replacement that advances virtual time instead of waiting."""
        self.advance(max(seconds, 0.0))
        await asyncio.sleep(0)


class ManualTaskScheduler(TaskScheduler):
    """TaskScheduler driven by a VirtualClock.

    Nothing runs until advance() is awaited; due runs then fire in due-time
    order with the clock set to each run's due time.
    """

    def __init__(self, clock: VirtualClock | None = None) -> None:
        self.clock = clock or VirtualClock()
        self._runs: dict[str, tuple[float, ScheduledRun]] = {}

    def _forget(self, run: ScheduledRun) -> None:
        entry = self._runs.get(run.key)
        if entry is not None and entry[1] is run:
            del self._runs[run.key]

    def schedule(self, key: str, delay_seconds: float, callback: ScheduledCallback) -> ScheduledRun:
        self.cancel(key)
        run_at = self.clock.now() + timedelta(seconds=delay_seconds)
        run = ScheduledRun(key, run_at, callback, on_cancel=self._forget)
        self._runs[key] = (self.clock.monotonic() + delay_seconds, run)
        return run

    def get(self, key: str) -> ScheduledRun | None:
        entry = self._runs.get(key)
        return entry[1] if entry else None

    def pending(self) -> list[ScheduledRun]:
        return [run for _, run in self._runs.values()]

    async def advance(self, seconds: float) -> int:
        """Move time forward, firing every run that falls due. Returns runs fired."""
        target = self.clock.monotonic() + seconds
        fired = 0
        while True:
            due = [entry for entry in self._runs.values() if entry[0] <= target]
            if not due:
                break
            due_at, run = min(due, key=lambda entry: entry[0])
            self._forget(run)
            if due_at > self.clock.monotonic():
                self.clock.advance(due_at - self.clock.monotonic())
            await run.fire()
            fired += 1
        if target > self.clock.monotonic():
            self.clock.advance(target - self.clock.monotonic())
        return fired
