"""Single cooperative job worker: claim, dispatch, report.

One worker claims and runs at most one job at a time, which serializes
every stream-state mutation without locks. The worker owns the retry
decision: retryable failures go back to the queue with backoff, everything
else is abandoned on the spot and left in the log with its error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from memchain.errors import is_retryable
from memchain.logging import correlation_scope
from memchain.metrics import JOBS_PROCESSED_TOTAL, observe_job_duration
from memchain.models.jobs import Job
from memchain.protocols import JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[object]]

DEFAULT_BASE_BACKOFF_MS = 2000


def job_stream_id(job: Job) -> str | None:
    """Best-effort stream id for log correlation; None when the payload lacks one."""
    record = job.payload.get("record")
    if isinstance(record, dict):
        stream_id = record.get("stream_id")
    else:
        stream_id = job.payload.get("stream_id")
    return stream_id if isinstance(stream_id, str) else None


class JobWorker:
    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        base_backoff_ms: int = DEFAULT_BASE_BACKOFF_MS,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._base_backoff_ms = base_backoff_ms

    async def run_once(self) -> bool:
        """Claim and run one job. Returns True if a job was claimed."""
        job = await self._queue.claim_next()
        if job is None:
            return False

        kind = job.kind.value
        with correlation_scope(stream_id=job_stream_id(job), job_id=job.id):
            try:
                with observe_job_duration(kind):
                    await self._handler(job)
            except Exception as exc:
                if is_retryable(exc):
                    updated = await self._queue.fail(job.id, exc, self._base_backoff_ms)
                    outcome = "abandoned" if updated is not None and updated.abandoned else "retried"
                    logger.warning("Job %s (%s) failed: %s", job.id, kind, exc)
                else:
                    await self._queue.abandon(job.id, exc)
                    outcome = "abandoned"
                    logger.error("Job %s (%s) failed permanently: %s", job.id, kind, exc)
                JOBS_PROCESSED_TOTAL.labels(kind=kind, outcome=outcome).inc()
                return True

            await self._queue.complete(job.id)
            JOBS_PROCESSED_TOTAL.labels(kind=kind, outcome="completed").inc()
            logger.info("Job %s (%s) completed", job.id, kind)
        return True

    async def drain(self, max_jobs: int | None = None) -> int:
        """Run jobs until none is claimable (or ``max_jobs`` ran). Returns the count."""
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if not await self.run_once():
                break
            processed += 1
        return processed

    async def run_forever(self, interval_s: float, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set, sleeping ``interval_s`` when idle."""
        logger.info("Worker loop started (interval %.2fs)", interval_s)
        while not stop_event.is_set():
            if await self.run_once():
                continue
            with suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=interval_s)
        logger.info("Worker loop stopped")


__all__ = ["DEFAULT_BASE_BACKOFF_MS", "JobHandler", "JobWorker", "job_stream_id"]
