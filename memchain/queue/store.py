"""Append-only JSONL job queue with lease semantics for crash recovery.

The log holds one JSON-encoded :class:`Job` per line. ``enqueue`` appends a
line; ``complete``, ``fail``, ``abandon`` and ``requeue`` rewrite the whole
log through an atomic rename. On startup the log is replayed in file order,
and a later line for the same job id replaces the earlier one in place, so
FIFO order is the order jobs were first enqueued.

Leases live only in memory. A crash releases every claim, and the claimed
job is delivered again on the next start (at-least-once).
"""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from memchain.metrics import JOBS_ENQUEUED_TOTAL, QUEUE_MALFORMED_LINES_TOTAL
from memchain.models.jobs import DEFAULT_MAX_ATTEMPTS, Job, JobKind
from memchain.models.records import utc_now
from memchain.persistence.files import append_line, atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_LEASE_DURATION_S = 300.0
DEFAULT_JITTER_RATIO = 0.1


def backoff_delay_ms(
    base_backoff_ms: int,
    attempts: int,
    *,
    jitter_ratio: float = DEFAULT_JITTER_RATIO,
    rng: Callable[[], float] = random.random,
) -> float:
    """``base * 2^(attempts-1)`` plus up to ``jitter_ratio`` of that delay."""
    delay = base_backoff_ms * 2 ** max(attempts - 1, 0)
    return delay + delay * jitter_ratio * rng()


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return f"{type(error).__name__}: {error}"
    return error


class JsonlJobQueue:
    """Durable FIFO job queue backed by a JSONL file.

    Lifecycle per job: queued → claimed → (completed | queued with backoff |
    abandoned). Abandoned jobs stay in the log, visible through
    :meth:`abandoned`, until an operator calls :meth:`requeue`.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        rng: Callable[[], float] = random.random,
        lease_duration_s: float = DEFAULT_LEASE_DURATION_S,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        jitter_ratio: float = DEFAULT_JITTER_RATIO,
    ) -> None:
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be >= 1")
        self.path = Path(path)
        self._clock = clock
        self._rng = rng
        self._lease_duration = timedelta(seconds=lease_duration_s)
        self._default_max_attempts = default_max_attempts
        self._jitter_ratio = jitter_ratio
        self._jobs: dict[str, Job] = {}
        self._leases: dict[str, datetime] = {}
        self._replay()

    def _replay(self) -> None:
        if not self.path.exists():
            return
        skipped = 0
        text = self.path.read_text(encoding="utf-8", errors="replace")
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                job = Job.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as exc:
                skipped += 1
                QUEUE_MALFORMED_LINES_TOTAL.inc()
                logger.warning("Skipping malformed queue line %s:%d: %s", self.path, lineno, exc)
                continue
            self._jobs[job.id] = job
        logger.info(
            "Replayed %d jobs from %s (%d malformed lines skipped)",
            len(self._jobs),
            self.path,
            skipped,
        )
        # A torn tail would swallow the next appended line.
        if skipped or (text and not text.endswith("\n")):
            self._rewrite()

    def _rewrite(self) -> None:
        text = "".join(job.model_dump_json() + "\n" for job in self._jobs.values())
        atomic_write_text(self.path, text)

    def _lease_live(self, job_id: str, now: datetime) -> bool:
        expires_at = self._leases.get(job_id)
        return expires_at is not None and expires_at > now

    async def enqueue(
        self,
        kind: JobKind,
        payload: dict[str, object],
        dedup_key: str | None = None,
        max_attempts: int | None = None,
    ) -> Job:
        """Append a job, or return the existing job that carries ``dedup_key``."""
        if dedup_key is not None:
            for existing in self._jobs.values():
                if existing.dedup_key == dedup_key:
                    logger.debug("Dedup hit for %s, returning job %s", dedup_key, existing.id)
                    return existing.model_copy()

        job = Job(
            kind=kind,
            payload=payload,
            dedup_key=dedup_key,
            max_attempts=max_attempts or self._default_max_attempts,
            created_at=self._clock(),
        )
        append_line(self.path, job.model_dump_json())
        self._jobs[job.id] = job
        JOBS_ENQUEUED_TOTAL.labels(kind=kind.value).inc()
        logger.info("Enqueued %s job %s", kind.value, job.id)
        return job.model_copy()

    async def claim_next(self) -> Job | None:
        """Lease the first claimable job in FIFO order, or return None."""
        now = self._clock()
        for job in self._jobs.values():
            if job.abandoned or self._lease_live(job.id, now):
                continue
            if job.next_eligible_at is not None and job.next_eligible_at > now:
                continue
            self._leases[job.id] = now + self._lease_duration
            return job.model_copy()
        return None

    async def complete(self, job_id: str) -> None:
        self._leases.pop(job_id, None)
        if job_id not in self._jobs:
            logger.warning("complete() for unknown job %s", job_id)
            return
        remaining = {jid: job for jid, job in self._jobs.items() if jid != job_id}
        previous, self._jobs = self._jobs, remaining
        try:
            self._rewrite()
        except OSError:
            self._jobs = previous
            raise
        logger.info("Completed job %s", job_id)

    async def fail(
        self, job_id: str, error: BaseException | str, base_backoff_ms: int
    ) -> Job | None:
        """Record a failed attempt and schedule the retry (or abandon the job)."""
        self._leases.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("fail() for unknown job %s", job_id)
            return None

        attempts = job.attempts + 1
        updates: dict[str, object] = {"attempts": attempts, "last_error": _error_text(error)}
        if attempts < job.max_attempts:
            delay_ms = backoff_delay_ms(
                base_backoff_ms, attempts, jitter_ratio=self._jitter_ratio, rng=self._rng
            )
            updates["next_eligible_at"] = self._clock() + timedelta(milliseconds=delay_ms)
        updated = self._replace(job, updates)

        if updated.abandoned:
            logger.error(
                "Job %s abandoned after %d attempts: %s", job_id, attempts, updated.last_error
            )
        else:
            logger.warning(
                "Job %s failed (attempt %d/%d), retry at %s: %s",
                job_id,
                attempts,
                updated.max_attempts,
                updated.next_eligible_at,
                updated.last_error,
            )
        return updated.model_copy()

    async def abandon(self, job_id: str, error: BaseException | str) -> Job | None:
        """Exhaust a job's attempts at once; it stays in the log for inspection."""
        self._leases.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None:
            logger.warning("abandon() for unknown job %s", job_id)
            return None
        updated = self._replace(
            job, {"attempts": job.max_attempts, "last_error": _error_text(error)}
        )
        logger.error("Job %s abandoned: %s", job_id, updated.last_error)
        return updated.model_copy()

    async def requeue(self, job_id: str) -> Job | None:
        """Reset an abandoned job so the worker picks it up again."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        updated = self._replace(job, {"attempts": 0, "next_eligible_at": None})
        logger.info("Requeued job %s", job_id)
        return updated.model_copy()

    def _replace(self, job: Job, updates: dict[str, object]) -> Job:
        updated = job.model_copy(update=updates)
        previous = self._jobs
        self._jobs = {jid: (updated if jid == job.id else j) for jid, j in previous.items()}
        try:
            self._rewrite()
        except OSError:
            self._jobs = previous
            raise
        return updated

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job is not None else None

    async def jobs(self) -> list[Job]:
        return [job.model_copy() for job in self._jobs.values()]

    async def abandoned(self) -> list[Job]:
        return [job.model_copy() for job in self._jobs.values() if job.abandoned]

    async def pending_count(self) -> int:
        """Jobs that are not abandoned, whether claimable now or waiting on backoff."""
        return sum(1 for job in self._jobs.values() if not job.abandoned)

    async def size(self) -> int:
        return len(self._jobs)


__all__ = ["DEFAULT_LEASE_DURATION_S", "JsonlJobQueue", "backoff_delay_ms"]
