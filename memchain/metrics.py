"""Prometheus metrics for the memchain pipeline.

All metric objects are module-level singletons.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, generate_latest

JOBS_ENQUEUED_TOTAL = Counter(
    "memchain_jobs_enqueued_total", "Jobs appended to the durable queue", ["kind"]
)
JOBS_PROCESSED_TOTAL = Counter(
    "memchain_jobs_processed_total",
    "Jobs run by the worker, by outcome (completed, retried, abandoned)",
    ["kind", "outcome"],
)
JOB_DURATION_SECONDS = Histogram(
    "memchain_job_duration_seconds", "Job handler duration in seconds", ["kind"]
)
QUEUE_MALFORMED_LINES_TOTAL = Counter(
    "memchain_queue_malformed_lines_total", "Queue log lines skipped during replay"
)
UPLOADS_TOTAL = Counter("memchain_uploads_total", "Content store uploads", ["outcome"])
ANCHORS_TOTAL = Counter("memchain_anchors_total", "Anchor submissions", ["outcome"])
CHAIN_FORKS_TOTAL = Counter(
    "memchain_chain_forks_total", "Uploads whose chain_prev no longer matched the stream head"
)
RECALL_RECORDS_TOTAL = Counter(
    "memchain_recall_records_total", "Records considered by recall", ["outcome"]
)

metrics_generate_latest = generate_latest


@contextmanager
def observe_job_duration(kind: str) -> Iterator[None]:
    """Observe the wall-clock duration of one job handler call."""
    start = time.monotonic()
    try:
        yield
    finally:
        JOB_DURATION_SECONDS.labels(kind=kind).observe(time.monotonic() - start)


__all__ = [
    "ANCHORS_TOTAL",
    "CHAIN_FORKS_TOTAL",
    "JOBS_ENQUEUED_TOTAL",
    "JOBS_PROCESSED_TOTAL",
    "JOB_DURATION_SECONDS",
    "QUEUE_MALFORMED_LINES_TOTAL",
    "RECALL_RECORDS_TOTAL",
    "UPLOADS_TOTAL",
    "metrics_generate_latest",
    "observe_job_duration",
]
