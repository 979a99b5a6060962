"""Queue job contracts.

``Job`` is the line format of the durable queue log. ``kind`` is a closed
enum so the worker can dispatch with an exhaustive ``match``; each kind has
a typed payload model that producers build and consumers parse.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from memchain.models.records import Record, utc_now

DEFAULT_MAX_ATTEMPTS = 6


class JobKind(StrEnum):
    UPLOAD = "upload"
    ANCHOR = "anchor"


def _generate_id() -> str:
    return uuid.uuid4().hex


class UploadJobPayload(BaseModel):
    """Payload for ``JobKind.UPLOAD``: the sealed record to encrypt and store."""

    record: Record


class AnchorJobPayload(BaseModel):
    """Payload for ``JobKind.ANCHOR``: everything needed to rebuild the anchor bytes."""

    stream_id: str
    pointer: str
    content_hash: str
    prev_content_hash: str | None = None
    date: str


class Job(BaseModel):
    id: str = Field(default_factory=_generate_id)
    kind: JobKind
    payload: dict[str, object] = Field(default_factory=dict)
    dedup_key: str | None = None
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    next_eligible_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def abandoned(self) -> bool:
        return self.attempts >= self.max_attempts

    def upload_payload(self) -> UploadJobPayload:
        if self.kind is not JobKind.UPLOAD:
            raise ValueError(f"job {self.id} is {self.kind}, not upload")
        return UploadJobPayload.model_validate(self.payload)

    def anchor_payload(self) -> AnchorJobPayload:
        if self.kind is not JobKind.ANCHOR:
            raise ValueError(f"job {self.id} is {self.kind}, not anchor")
        return AnchorJobPayload.model_validate(self.payload)


__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "AnchorJobPayload",
    "Job",
    "JobKind",
    "UploadJobPayload",
]
