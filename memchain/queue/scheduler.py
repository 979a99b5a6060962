"""WorkerScheduler: drives the job worker from APScheduler's AsyncIOScheduler.

The worker tick runs as an interval job in the existing asyncio event loop.
``max_instances=1`` with ``coalesce=True`` keeps processing strictly
sequential: a slow tick delays the next one instead of overlapping it.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from memchain.queue.worker import JobWorker

logger = logging.getLogger(__name__)

WORKER_JOB_ID = "memchain:worker"


class WorkerScheduler:
    def __init__(
        self,
        worker: JobWorker,
        interval_s: float,
        *,
        max_jobs_per_tick: int | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._worker = worker
        self._interval_s = interval_s
        self._max_jobs_per_tick = max_jobs_per_tick
        self._scheduler = scheduler or AsyncIOScheduler()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Register the worker tick and start the scheduler. Idempotent."""
        if self._running:
            return
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._interval_s),
            id=WORKER_JOB_ID,
            name="memchain-worker",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info("Worker scheduler started (every %.2fs)", self._interval_s)

    def stop(self) -> None:
        """Stop the scheduler without waiting for a running tick. Idempotent."""
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Worker scheduler stopped")

    async def tick(self) -> int:
        """Drain claimable jobs; exceptions are logged so the schedule keeps running."""
        try:
            return await self._worker.drain(self._max_jobs_per_tick)
        except Exception:
            logger.exception("Worker tick failed")
            return 0


__all__ = ["WORKER_JOB_ID", "WorkerScheduler"]
