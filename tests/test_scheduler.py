import asyncio
import logging
from dataclasses import replace

from errors import SyncAlreadyRunning
from login import LoginRateLimiter
from models import SyncMode, SyncReport
from scheduler import SyncScheduler


class RecordingReconciler:
    def __init__(self, error=None):
        self.modes = []
        self.error = error

    async def run_sync(self, mode=SyncMode.APPLY, notify=None):
        self.modes.append(mode)
        if self.error is not None:
            raise self.error
        return SyncReport(mode=mode, completed=True)


class CountingLimiter(LoginRateLimiter):
    def __init__(self):
        super().__init__(max_attempts=3, window_ms=1000)
        self.sweeps = 0

    def sweep(self):
        self.sweeps += 1
        return super().sweep()


def test_run_once_runs_sync_and_sweeps(settings):
    reconciler = RecordingReconciler()
    limiter = CountingLimiter()
    scheduler = SyncScheduler(reconciler, limiter, settings)

    report = asyncio.run(scheduler.run_once())

    assert report.completed
    assert reconciler.modes == [SyncMode.APPLY]
    assert limiter.sweeps == 1


def test_dry_run_setting_uses_check_mode(settings):
    reconciler = RecordingReconciler()
    scheduler = SyncScheduler(reconciler, CountingLimiter(), replace(settings, sync_dry_run=True))

    asyncio.run(scheduler.run_once())

    assert reconciler.modes == [SyncMode.CHECK]


def test_cycle_errors_are_logged_not_raised(settings, caplog):
    caplog.set_level(logging.WARNING)
    limiter = CountingLimiter()

    async def runner():
        busy = SyncScheduler(RecordingReconciler(SyncAlreadyRunning("busy")), limiter, settings)
        broken = SyncScheduler(RecordingReconciler(RuntimeError("boom")), limiter, settings)
        return await busy.run_once(), await broken.run_once()

    assert asyncio.run(runner()) == (None, None)
    assert limiter.sweeps == 2
    messages = [r.message for r in caplog.records]
    assert "Scheduled forum sync skipped, a sync is already running" in messages
    assert "Scheduled forum sync failed" in messages


def test_trigger_runs_next_cycle_without_waiting_for_interval(settings):
    reconciler = RecordingReconciler()
    scheduler = SyncScheduler(reconciler, CountingLimiter(), replace(settings, sync_interval_seconds=3600))

    async def runner():
        scheduler.start()
        while len(reconciler.modes) < 1:
            await asyncio.sleep(0)
        scheduler.trigger()
        while len(reconciler.modes) < 2:
            await asyncio.sleep(0)
        await scheduler.stop()

    asyncio.run(asyncio.wait_for(runner(), timeout=5))

    assert reconciler.modes == [SyncMode.APPLY, SyncMode.APPLY]
    assert not scheduler.running


def test_scheduler_built_outside_a_loop_runs_in_later_loops(settings):
    reconciler = RecordingReconciler()
    scheduler = SyncScheduler(reconciler, CountingLimiter(), replace(settings, sync_interval_seconds=3600))

    async def cycle(count):
        scheduler.start()
        while len(reconciler.modes) < count:
            await asyncio.sleep(0)
        await scheduler.stop()

    asyncio.run(asyncio.wait_for(cycle(1), timeout=5))
    asyncio.run(asyncio.wait_for(cycle(2), timeout=5))

    assert len(reconciler.modes) == 2
