from __future__ import annotations

from memchain.models.anchors import AnchorPolicy, AnchorReceipt, AnchorVerification
from memchain.models.jobs import (
    DEFAULT_MAX_ATTEMPTS,
    AnchorJobPayload,
    Job,
    JobKind,
    UploadJobPayload,
)
from memchain.models.records import (
    ENVELOPE_ALGORITHM,
    ENVELOPE_VERSION,
    RECORD_SCHEMA_TAG,
    AnchorRef,
    ChainEntry,
    EncryptedEnvelope,
    Record,
    StreamState,
    stream_id_for,
    utc_now,
)
from memchain.models.storage import StoredFile, UploadMetadata, UploadResult

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "ENVELOPE_ALGORITHM",
    "ENVELOPE_VERSION",
    "RECORD_SCHEMA_TAG",
    "AnchorJobPayload",
    "AnchorPolicy",
    "AnchorReceipt",
    "AnchorRef",
    "AnchorVerification",
    "ChainEntry",
    "EncryptedEnvelope",
    "Job",
    "JobKind",
    "Record",
    "StoredFile",
    "StreamState",
    "UploadJobPayload",
    "UploadMetadata",
    "UploadResult",
    "stream_id_for",
    "utc_now",
]
