from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from memchain.config import AnchorConfig, MemchainSettings, StorageConfig, WorkerConfig
from memchain.crypto.engine import KeyCache
from memchain.crypto.keys import signing_key_from_hex
from memchain.persistence.state_store import JsonStateStore
from memchain.pipeline import MemoryPipeline
from memchain.queue.store import JsonlJobQueue
from memchain.queue.worker import JobWorker

from tests.fakes import SEED_HEX, FakeClock, InMemoryAnchorService, InMemoryContentStore


@pytest.fixture
def signing_key() -> Ed25519PrivateKey:
    return signing_key_from_hex(SEED_HEX)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> MemchainSettings:
    return MemchainSettings(
        storage=StorageConfig(data_dir=tmp_path),
        anchor=AnchorConfig(enabled=True, endpoints=["http://anchor.test"]),
        worker=WorkerConfig(base_backoff_ms=1000),
    )


@pytest.fixture
def content_store(clock: FakeClock) -> InMemoryContentStore:
    return InMemoryContentStore(clock)


@pytest.fixture
def anchor_service() -> InMemoryAnchorService:
    return InMemoryAnchorService()


@pytest.fixture
def state_store(settings: MemchainSettings, clock: FakeClock) -> JsonStateStore:
    return JsonStateStore(settings.storage.state_path, clock=clock)


@pytest.fixture
def queue(settings: MemchainSettings, clock: FakeClock) -> JsonlJobQueue:
    return JsonlJobQueue(settings.storage.queue_path, clock=clock, rng=lambda: 0.0)


@pytest.fixture
def pipeline(
    settings: MemchainSettings,
    signing_key: Ed25519PrivateKey,
    state_store: JsonStateStore,
    queue: JsonlJobQueue,
    content_store: InMemoryContentStore,
    anchor_service: InMemoryAnchorService,
    clock: FakeClock,
) -> MemoryPipeline:
    return MemoryPipeline(
        settings,
        signing_key=signing_key,
        state_store=state_store,
        queue=queue,
        content_store=content_store,
        anchor_service=anchor_service,
        key_cache=KeyCache(),
        clock=clock,
    )


@pytest.fixture
def worker(queue: JsonlJobQueue, pipeline: MemoryPipeline) -> JobWorker:
    return JobWorker(queue, pipeline.handle, base_backoff_ms=1000)
