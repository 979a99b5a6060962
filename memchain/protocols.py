"""Structural interfaces between the orchestrator and its collaborators.

Storage backends and external clients are swappable behind these protocols;
tests inject in-memory fakes that satisfy them.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from memchain.models.anchors import AnchorReceipt, AnchorVerification
from memchain.models.jobs import Job, JobKind
from memchain.models.records import StreamState
from memchain.models.storage import StoredFile, UploadMetadata, UploadResult


@runtime_checkable
class StateStore(Protocol):
    async def get(self, stream_id: str) -> StreamState: ...

    async def set(self, stream_id: str, **updates: object) -> StreamState: ...

    async def list_streams(self) -> list[str]: ...


@runtime_checkable
class JobQueue(Protocol):
    async def enqueue(
        self,
        kind: JobKind,
        payload: dict[str, object],
        dedup_key: str | None = None,
        max_attempts: int | None = None,
    ) -> Job: ...

    async def claim_next(self) -> Job | None: ...

    async def complete(self, job_id: str) -> None: ...

    async def fail(self, job_id: str, error: BaseException | str, base_backoff_ms: int) -> Job | None: ...

    async def abandon(self, job_id: str, error: BaseException | str) -> Job | None: ...

    async def jobs(self) -> list[Job]: ...


@runtime_checkable
class ContentStore(Protocol):
    async def upload(self, envelope_bytes: bytes, metadata: UploadMetadata) -> UploadResult: ...

    async def fetch(self, pointer: str) -> bytes: ...

    async def fetch_and_verify(self, pointer: str, expected_hash: str) -> bytes: ...

    async def list_files(self, owner: str) -> list[StoredFile]: ...


@runtime_checkable
class AnchorService(Protocol):
    async def submit(
        self, payload: bytes, signing_identity: Ed25519PrivateKey
    ) -> AnchorReceipt: ...

    async def verify(self, receipt_id: str, expected_payload: bytes) -> AnchorVerification: ...


__all__ = ["AnchorService", "ContentStore", "JobQueue", "StateStore"]
