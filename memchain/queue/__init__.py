from __future__ import annotations

from memchain.queue.scheduler import WorkerScheduler
from memchain.queue.store import JsonlJobQueue, backoff_delay_ms
from memchain.queue.worker import JobWorker

__all__ = ["JobWorker", "JsonlJobQueue", "WorkerScheduler", "backoff_delay_ms"]
