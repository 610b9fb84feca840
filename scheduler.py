"""
Periodic forum sync
"""

import asyncio
import logging
from typing import Optional

from config import Settings
from errors import SyncAlreadyRunning
from models import SyncMode, SyncReport


logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Runs a full sync every ``sync_interval_seconds`` and on demand.

    A tick waits for the previous cycle to finish, so scheduled cycles never
    overlap. After every cycle expired login error entries are cleared.
    """

    def __init__(self, reconciler, limiter, settings: Settings):
        self.reconciler = reconciler
        self.limiter = limiter
        self.settings = settings
        self.last_run: Optional[float] = None
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def mode(self) -> SyncMode:
        return SyncMode.CHECK if self.settings.sync_dry_run else SyncMode.APPLY

    async def run_once(self) -> Optional[SyncReport]:
        """Run one cycle. Errors are logged and never raised."""
        loop = asyncio.get_running_loop()
        self.last_run = loop.time()
        report = None
        try:
            report = await self.reconciler.run_sync(self.mode)
        except asyncio.CancelledError:
            raise
        except SyncAlreadyRunning:
            logger.warning("Scheduled forum sync skipped, a sync is already running")
        except Exception:
            logger.exception("Scheduled forum sync failed")
        finally:
            self.limiter.sweep()
        return report

    async def _runner(self):
        while True:
            await self.run_once()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.sync_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def start(self) -> asyncio.Task:
        """Start the loop; the first cycle runs immediately."""
        if self.running:
            return self._task
        logger.info(f"Forum sync scheduled every {self.settings.sync_interval_seconds}s ({self.mode.value})")
        # Bound to the loop that runs the cycles
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._runner(), name="forum-sync")
        return self._task

    def trigger(self):
        """Run the next cycle now instead of waiting for the interval."""
        if self._wake is not None:
            self._wake.set()

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Forum sync scheduler stopped")
