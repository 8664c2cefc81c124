from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from species_gallery.config import settings
from species_gallery.db import close_pool, get_pool
from species_gallery.logging import configure_logging
from species_gallery.repos.species_media_repo import SpeciesMediaRepo
from species_gallery.repos.species_repo import SpeciesRepo
from species_gallery.services.event_hub import EventHub
from species_gallery.services.recovery import RecoverySweeper

logger = logging.getLogger("recovery_worker")


class RecoveryScheduler:
    """
    Runs the comprehensive sweep every interval_seconds inside the API process,
    so recovery no longer depends on a browser polling the admin endpoints.
    """

    def __init__(self, sweeper: RecoverySweeper, *, interval_seconds: float):
        self.sweeper = sweeper
        self.interval_seconds = float(interval_seconds)
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="recovery-scheduler")
        logger.info("Recovery scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Recovery scheduler stopped", extra={"runs": self.runs})

    async def run_once(self):
        result = await self.sweeper.run_comprehensive()
        self.runs += 1
        logger.info(
            "Scheduled recovery run",
            extra={"success": result.success, "fixed": result.fixed, "retried": result.retried},
        )
        return result

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled recovery run failed")


class WorkerProcess:
    """Standalone sweeper for deployments that run recovery outside the API process."""

    def __init__(self, interval_seconds: Optional[float] = None):
        self.interval_seconds = float(interval_seconds or settings.RECOVERY_SCHEDULE_SECONDS or 60)
        self.running = True

    async def main(self):
        pool = await get_pool()
        # Events from this process reach no SSE clients; connected clients see
        # the repaired status on their next fetch.
        sweeper = RecoverySweeper(
            species_repo=SpeciesRepo(pool),
            media_repo=SpeciesMediaRepo(pool),
            events=EventHub(),
        )
        scheduler = RecoveryScheduler(sweeper, interval_seconds=self.interval_seconds)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop_worker)

        logger.info("Recovery worker started", extra={"interval_seconds": self.interval_seconds})

        try:
            while self.running:
                try:
                    await scheduler.run_once()
                except Exception:
                    logger.exception("Recovery run failed")

                slept = 0.0
                while self.running and slept < self.interval_seconds:
                    await asyncio.sleep(1)
                    slept += 1
        finally:
            await close_pool()
            logger.info("Recovery worker stopped")

    def stop_worker(self):
        self.running = False
        logger.info("Recovery worker stopping")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(WorkerProcess().main())
