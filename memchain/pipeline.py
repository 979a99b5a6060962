"""MemoryPipeline: capture → encrypt → upload → chain-link → anchor.

``save`` only seals a record and enqueues it; everything that touches the
network runs later inside queue jobs, one at a time, so a crash at any point
leaves either a pending job or a completed state update, never a half
applied one:

- UPLOAD: encrypt, upload, advance the stream head, maybe enqueue ANCHOR.
- ANCHOR: sign and submit the anchor payload, record the receipt.

Re-running either job after a partial failure is safe. The content store is
content-addressed, and an upload whose hash already heads the stream skips
straight to the anchor decision.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar, assert_never

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import BaseModel, Field

from memchain.anchoring import anchor_dedup_key, build_anchor_payload, should_anchor
from memchain.capture import CaptureInput, capture_payload
from memchain.chain import ChainReport, verify_chain_integrity
from memchain.config import MemchainSettings
from memchain.crypto.engine import KeyCache, decrypt, derive_key, encrypt
from memchain.errors import MemchainError, PermanentRequestError, TransientIOError
from memchain.metrics import CHAIN_FORKS_TOTAL, RECALL_RECORDS_TOTAL
from memchain.models.anchors import AnchorReceipt, AnchorVerification
from memchain.models.jobs import AnchorJobPayload, Job, JobKind, UploadJobPayload
from memchain.models.records import (
    ChainEntry,
    EncryptedEnvelope,
    Record,
    StreamState,
    stream_id_for,
    utc_now,
)
from memchain.models.storage import StoredFile, UploadMetadata
from memchain.protocols import AnchorService, ContentStore, JobQueue, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UploadOutcome(BaseModel):
    pointer: str
    content_hash: str
    anchor_job_id: str | None = None
    fork: bool = False
    replayed: bool = False
    """True when the stream head already held this record (job re-run after a crash)."""


class RecalledRecord(BaseModel):
    pointer: str
    filename: str | None = None
    record: Record


class RecordFailure(BaseModel):
    pointer: str
    error: str


class StreamVerification(BaseModel):
    stream_id: str
    chain: ChainReport
    failures: list[RecordFailure] = Field(default_factory=list)
    anchor: AnchorVerification | None = None

    @property
    def ok(self) -> bool:
        anchor_ok = self.anchor is None or self.anchor.valid
        return self.chain.ok and not self.failures and anchor_ok


def _split_stream_id(stream_id: str) -> tuple[str, str]:
    owner, sep, agent_id = stream_id.partition(":")
    if not sep or not owner or not agent_id:
        raise ValueError(f"stream id must be '<owner>:<agent_id>', got {stream_id!r}")
    return owner, agent_id


def _newest_first(files: list[StoredFile]) -> list[StoredFile]:
    epoch = datetime.min.replace(tzinfo=UTC)
    return sorted(
        files,
        key=lambda f: f.timestamp if f.timestamp is not None and f.timestamp.tzinfo else epoch,
        reverse=True,
    )


class MemoryPipeline:
    def __init__(
        self,
        settings: MemchainSettings,
        *,
        signing_key: Ed25519PrivateKey,
        state_store: StateStore,
        queue: JobQueue,
        content_store: ContentStore,
        anchor_service: AnchorService | None = None,
        key_cache: KeyCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._signing_key = signing_key
        self._state = state_store
        self._queue = queue
        self._content = content_store
        self._anchor = anchor_service
        self._key_cache = key_cache or KeyCache(
            ttl_s=settings.crypto.key_cache_ttl_s,
            max_entries=settings.crypto.key_cache_max_entries,
        )
        self._clock = clock

    @property
    def anchoring_enabled(self) -> bool:
        return self._settings.anchor.enabled and self._anchor is not None

    def default_stream_id(self) -> str:
        identity = self._settings.identity
        return stream_id_for(identity.owner, identity.agent_id)

    async def _bounded(self, call: Awaitable[T], timeout_s: float, what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=timeout_s)
        except TimeoutError as exc:
            raise TransientIOError(f"{what} timed out after {timeout_s}s") from exc

    def _filename_prefix(self, agent_id: str) -> str:
        return f"{self._settings.content_store.memory_prefix}{agent_id}/"

    # ── Save ─────────────────────────────────────────────────────────

    async def save(self, capture: CaptureInput) -> Job | None:
        """Seal a record on the stream head and enqueue its UPLOAD job.

        Stream state is read, never written: the head only moves once the
        upload is confirmed.
        """
        if not self._settings.capture.enabled:
            logger.debug("Capture disabled, not saving")
            return None

        owner = self._settings.identity.owner
        agent_id = capture.agent_id or self._settings.identity.agent_id
        stream_id = stream_id_for(owner, agent_id)
        state = await self._state.get(stream_id)

        created_at = (capture.timestamp or self._clock()).astimezone(UTC)
        date = created_at.date().isoformat()
        payload = capture_payload(
            capture,
            self._settings.capture.strategy,
            self._settings.capture.max_message_chars,
            now=created_at,
        )
        record = Record(
            stream_id=stream_id,
            owner=owner,
            agent_id=agent_id,
            created_at=created_at,
            date=date,
            session_ref=capture.session_id,
            chain_prev=state.last_pointer,
            chain_prev_hash=state.last_content_hash,
            payload=payload,
        ).seal()

        job = await self._queue.enqueue(
            JobKind.UPLOAD,
            UploadJobPayload(record=record).model_dump(mode="json"),
            dedup_key=f"{owner}:{agent_id}:{date}:{record.content_hash}",
            max_attempts=self._settings.worker.max_attempts,
        )
        logger.info("Saved record %s on %s as job %s", record.content_hash, stream_id, job.id)
        return job

    # ── Job processors ───────────────────────────────────────────────

    async def handle(self, job: Job) -> UploadOutcome | AnchorReceipt:
        match job.kind:
            case JobKind.UPLOAD:
                return await self.process_upload_job(job)
            case JobKind.ANCHOR:
                return await self.process_anchor_job(job)
            case _:
                assert_never(job.kind)

    async def process_upload_job(self, job: Job) -> UploadOutcome:
        record = job.upload_payload().record
        record.verify_content_hash()
        assert record.content_hash is not None
        stream_id = record.stream_id

        state = await self._state.get(stream_id)
        replayed = state.last_content_hash == record.content_hash and state.last_pointer is not None
        fork = False

        if replayed:
            assert state.last_pointer is not None
            pointer = state.last_pointer
            logger.info("Record %s already heads %s, skipping upload", record.content_hash, stream_id)
        else:
            if record.chain_prev != state.last_pointer:
                fork = True
                CHAIN_FORKS_TOTAL.inc()
                logger.warning(
                    "Fork on %s: record %s links to %s but the head is %s",
                    stream_id,
                    record.content_hash,
                    record.chain_prev,
                    state.last_pointer,
                )
            pointer = await self._upload(record)
            state = await self._state.set(
                stream_id, last_pointer=pointer, last_content_hash=record.content_hash
            )

        anchor_job = await self._maybe_enqueue_anchor(state, record, pointer)
        return UploadOutcome(
            pointer=pointer,
            content_hash=record.content_hash,
            anchor_job_id=anchor_job.id if anchor_job is not None else None,
            fork=fork,
            replayed=replayed,
        )

    async def _upload(self, record: Record) -> str:
        plaintext = record.to_bytes()
        key_context = self._settings.crypto.key_context
        key = derive_key(self._signing_key, key_context, cache=self._key_cache)
        envelope = encrypt(plaintext, key, owner=record.owner, key_context=key_context)
        metadata = UploadMetadata(
            owner=record.owner,
            filename=f"{self._filename_prefix(record.agent_id)}{record.date}-{record.content_hash[:12]}.json",
            content_md5=hashlib.md5(plaintext, usedforsecurity=False).hexdigest(),
        )
        result = await self._bounded(
            self._content.upload(envelope.to_bytes(), metadata),
            self._settings.content_store.timeout_s,
            "upload",
        )
        logger.info("Uploaded record %s as %s", record.content_hash, result.pointer)
        return result.pointer

    async def _maybe_enqueue_anchor(
        self, state: StreamState, record: Record, pointer: str
    ) -> Job | None:
        policy = self._settings.anchor.policy
        if not should_anchor(state, policy, record.date, enabled=self.anchoring_enabled):
            return None
        assert record.content_hash is not None
        payload = AnchorJobPayload(
            stream_id=record.stream_id,
            pointer=pointer,
            content_hash=record.content_hash,
            prev_content_hash=record.chain_prev_hash,
            date=record.date,
        )
        return await self._queue.enqueue(
            JobKind.ANCHOR,
            payload.model_dump(mode="json"),
            dedup_key=anchor_dedup_key(policy, record.stream_id, pointer, record.date),
            max_attempts=self._settings.worker.max_attempts,
        )

    async def process_anchor_job(self, job: Job) -> AnchorReceipt:
        if self._anchor is None:
            raise PermanentRequestError("anchor job received but no anchor service is configured")
        anchor = job.anchor_payload()
        payload = build_anchor_payload(
            anchor.pointer, anchor.content_hash, anchor.prev_content_hash, anchor.date
        )
        receipt = await self._bounded(
            self._anchor.submit(payload, self._signing_key),
            self._settings.anchor.timeout_s,
            "anchor submit",
        )

        state = await self._state.get(anchor.stream_id)
        if state.last_anchor_date is not None and anchor.date < state.last_anchor_date:
            logger.warning(
                "Anchor for %s on %s is older than recorded anchor date %s; state unchanged",
                anchor.stream_id,
                anchor.date,
                state.last_anchor_date,
            )
            return receipt
        await self._state.set(
            anchor.stream_id,
            last_anchor_date=anchor.date,
            last_anchor_receipt=receipt.receipt_id,
            last_anchor_pointer=anchor.pointer,
        )
        logger.info("Anchored %s at %s, receipt %s", anchor.stream_id, anchor.pointer, receipt.receipt_id)
        return receipt

    # ── Recall & verification ────────────────────────────────────────

    async def _candidate_files(self, stream_id: str, limit: int) -> tuple[list[StoredFile], bool]:
        owner, agent_id = _split_stream_id(stream_id)
        prefix = self._filename_prefix(agent_id)
        files = await self._bounded(
            self._content.list_files(owner),
            self._settings.content_store.timeout_s,
            "list files",
        )
        matching = _newest_first(
            [f for f in files if f.filename is not None and f.filename.startswith(prefix)]
        )
        return matching[:limit], len(matching) > limit

    async def _load(self, stored: StoredFile, stream_id: str) -> RecalledRecord:
        raw = await self._bounded(
            self._content.fetch(stored.pointer),
            self._settings.content_store.timeout_s,
            f"fetch {stored.pointer}",
        )
        envelope = EncryptedEnvelope.from_bytes(raw)
        key = derive_key(self._signing_key, envelope.key_context, cache=self._key_cache)
        record = Record.from_bytes(decrypt(envelope, key))
        record.verify_content_hash()
        if record.stream_id != stream_id:
            raise PermanentRequestError(f"record belongs to {record.stream_id}, not {stream_id}")
        return RecalledRecord(pointer=stored.pointer, filename=stored.filename, record=record)

    async def _load_all(
        self, files: list[StoredFile], stream_id: str
    ) -> list[RecalledRecord | RecordFailure]:
        semaphore = asyncio.Semaphore(self._settings.recall.fetch_concurrency)

        async def _one(stored: StoredFile) -> RecalledRecord | RecordFailure:
            async with semaphore:
                try:
                    loaded = await self._load(stored, stream_id)
                except MemchainError as exc:
                    RECALL_RECORDS_TOTAL.labels(outcome="skipped").inc()
                    logger.warning("Skipping record %s: %s", stored.pointer, exc)
                    return RecordFailure(pointer=stored.pointer, error=f"{type(exc).__name__}: {exc}")
            RECALL_RECORDS_TOTAL.labels(outcome="ok").inc()
            return loaded

        settled = await asyncio.gather(*(_one(f) for f in files), return_exceptions=True)
        # Every fetch has settled; an unexpected error still propagates.
        loaded: list[RecalledRecord | RecordFailure] = []
        for result in settled:
            if isinstance(result, BaseException):
                raise result
            loaded.append(result)
        return loaded

    async def recall(self, stream_id: str | None = None, limit: int | None = None) -> list[RecalledRecord]:
        """Newest-first records of a stream; unreadable ones are skipped, not raised."""
        stream_id = stream_id or self.default_stream_id()
        files, _ = await self._candidate_files(stream_id, limit or self._settings.recall.limit)
        results = await self._load_all(files, stream_id)
        return [r for r in results if isinstance(r, RecalledRecord)]

    async def verify_stream(
        self, stream_id: str | None = None, limit: int | None = None
    ) -> StreamVerification:
        """Recheck hashes, chain links and the latest anchor of a stream."""
        stream_id = stream_id or self.default_stream_id()
        files, truncated = await self._candidate_files(stream_id, limit or self._settings.recall.limit)
        results = await self._load_all(files, stream_id)
        failures = [r for r in results if isinstance(r, RecordFailure)]
        recalled = sorted(
            (r for r in results if isinstance(r, RecalledRecord)),
            key=lambda r: r.record.created_at,
        )
        entries = [ChainEntry(pointer=r.pointer, record=r.record) for r in recalled]
        report = verify_chain_integrity(entries, partial=truncated)

        anchor_result: AnchorVerification | None = None
        state = await self._state.get(stream_id)
        if state.last_anchor_receipt is not None and self._anchor is not None:
            anchored = next((r for r in recalled if r.pointer == state.last_anchor_pointer), None)
            if anchored is None:
                anchor_result = AnchorVerification(
                    valid=False, error="anchored record is not among the verified records"
                )
            else:
                assert anchored.record.content_hash is not None
                expected = build_anchor_payload(
                    anchored.pointer,
                    anchored.record.content_hash,
                    anchored.record.chain_prev_hash,
                    anchored.record.date,
                )
                anchor_result = await self._bounded(
                    self._anchor.verify(state.last_anchor_receipt, expected),
                    self._settings.anchor.timeout_s,
                    "anchor verify",
                )

        verification = StreamVerification(
            stream_id=stream_id, chain=report, failures=failures, anchor=anchor_result
        )
        logger.info(
            "Verified %s: %d records, %d breaks, %d unreadable, anchor %s",
            stream_id,
            report.checked,
            len(report.breaks),
            len(failures),
            "n/a" if anchor_result is None else ("valid" if anchor_result.valid else "invalid"),
        )
        return verification


__all__ = [
    "MemoryPipeline",
    "RecalledRecord",
    "RecordFailure",
    "StreamVerification",
    "UploadOutcome",
]
