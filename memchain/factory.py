"""Wire settings into a running memchain pipeline.

Builds the state store, durable queue, HTTP clients, pipeline, worker and
scheduler in dependency order. Collaborators can be injected, which is how
tests swap in in-memory fakes for the external services.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from memchain.clients.anchor_service import HttpAnchorService
from memchain.clients.content_store import HttpContentStore
from memchain.config import MemchainSettings
from memchain.crypto.engine import KeyCache
from memchain.crypto.keys import SigningKeyManager, signing_key_from_hex
from memchain.persistence.sqlite_state_store import SQLiteStateStore
from memchain.persistence.state_store import JsonStateStore
from memchain.pipeline import MemoryPipeline
from memchain.protocols import AnchorService, ContentStore, StateStore
from memchain.queue.scheduler import WorkerScheduler
from memchain.queue.store import JsonlJobQueue
from memchain.queue.worker import JobWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MemchainRuntime:
    pipeline: MemoryPipeline
    queue: JsonlJobQueue
    state_store: StateStore
    worker: JobWorker
    scheduler: WorkerScheduler
    content_store: ContentStore
    anchor_service: AnchorService | None

    async def aclose(self) -> None:
        self.scheduler.stop()
        for client in (self.content_store, self.anchor_service):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()


def resolve_signing_key(
    settings: MemchainSettings, key_manager: SigningKeyManager | None = None
) -> Ed25519PrivateKey:
    """Seed from settings if given, else the owner's key from the OS keyring."""
    identity = settings.identity
    if identity.signing_key_hex is not None:
        return signing_key_from_hex(identity.signing_key_hex.get_secret_value())
    manager = key_manager or SigningKeyManager(identity.keyring_service)
    return manager.load_signing_key(identity.owner)


async def build_state_store(settings: MemchainSettings) -> StateStore:
    storage = settings.storage
    if storage.state_backend == "sqlite":
        store = SQLiteStateStore(storage.state_db_path)
        await store.initialize()
        return store
    return JsonStateStore(storage.state_path)


async def create_runtime(
    settings: MemchainSettings,
    *,
    signing_key: Ed25519PrivateKey | None = None,
    content_store: ContentStore | None = None,
    anchor_service: AnchorService | None = None,
    key_manager: SigningKeyManager | None = None,
) -> MemchainRuntime:
    """Create every component and return them unstarted.

    Call ``runtime.scheduler.start()`` from inside a running event loop to
    begin processing queued jobs.
    """
    signing_key = signing_key or resolve_signing_key(settings, key_manager)
    state_store = await build_state_store(settings)
    queue = JsonlJobQueue(
        settings.storage.queue_path,
        lease_duration_s=settings.worker.lease_duration_s,
        default_max_attempts=settings.worker.max_attempts,
    )

    cs = settings.content_store
    content_store = content_store or HttpContentStore(
        cs.base_url,
        cs.gateway_urls or None,
        timeout_s=cs.timeout_s,
        max_retries=cs.max_retries,
    )
    anchor_cfg = settings.anchor
    if anchor_service is None and anchor_cfg.enabled:
        anchor_service = HttpAnchorService(
            anchor_cfg.endpoints,
            timeout_s=anchor_cfg.timeout_s,
            max_retries=anchor_cfg.max_retries,
            min_request_interval_s=anchor_cfg.min_request_interval_s,
        )

    pipeline = MemoryPipeline(
        settings,
        signing_key=signing_key,
        state_store=state_store,
        queue=queue,
        content_store=content_store,
        anchor_service=anchor_service,
        key_cache=KeyCache(
            ttl_s=settings.crypto.key_cache_ttl_s,
            max_entries=settings.crypto.key_cache_max_entries,
        ),
    )
    worker = JobWorker(queue, pipeline.handle, base_backoff_ms=settings.worker.base_backoff_ms)
    scheduler = WorkerScheduler(worker, settings.worker.interval_s)

    logger.info(
        "memchain runtime ready: stream %s, state backend %s, anchoring %s",
        pipeline.default_stream_id(),
        settings.storage.state_backend,
        "on" if pipeline.anchoring_enabled else "off",
    )
    return MemchainRuntime(
        pipeline=pipeline,
        queue=queue,
        state_store=state_store,
        worker=worker,
        scheduler=scheduler,
        content_store=content_store,
        anchor_service=anchor_service,
    )


__all__ = ["MemchainRuntime", "build_state_store", "create_runtime", "resolve_signing_key"]
