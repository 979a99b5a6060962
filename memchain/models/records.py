from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from memchain.canonical import encode
from memchain.errors import FormatError, IntegrityError

RECORD_SCHEMA_TAG = "memchain.record.v1"

ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = "AES-256-GCM"

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


def utc_now() -> datetime:
    return datetime.now(UTC)


def stream_id_for(owner: str, agent_id: str) -> str:
    return f"{owner}:{agent_id}"


class AnchorRef(BaseModel):
    receipt_id: str | None = None
    sequence_number: int | None = None
    time: datetime | None = None


class Record(BaseModel):
    """One captured memory in a stream's hash chain.

    ``content_hash`` covers every field except itself and ``anchor_ref``;
    use :meth:`seal` to produce the hashed copy. Instances are frozen, so a
    sealed record cannot drift from its hash.
    """

    model_config = ConfigDict(frozen=True)

    stream_id: str
    owner: str
    agent_id: str
    created_at: datetime
    date: str = Field(pattern=_DATE_PATTERN)
    schema_tag: str = RECORD_SCHEMA_TAG
    session_ref: str | None = None
    chain_prev: str | None = None
    chain_prev_hash: str | None = None
    content_hash: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    anchor_ref: AnchorRef | None = None

    @field_validator("created_at")
    @classmethod
    def _ensure_timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
            raise ValueError("created_at must be timezone-aware")
        return value

    def hash_input(self) -> bytes:
        return encode(self.model_dump(mode="json", exclude={"content_hash", "anchor_ref"}))

    def compute_content_hash(self) -> str:
        # Lazy: memchain.crypto.engine imports this module.
        from memchain.crypto.engine import content_hash

        return content_hash(self.hash_input())

    def seal(self) -> Record:
        return self.model_copy(update={"content_hash": self.compute_content_hash()})

    def verify_content_hash(self) -> None:
        """Raise IntegrityError unless the stored hash matches the content."""
        actual = self.compute_content_hash()
        if self.content_hash != actual:
            raise IntegrityError(
                f"content_hash mismatch: expected {self.content_hash}, got {actual}"
            )

    def to_bytes(self) -> bytes:
        return encode(self)

    @classmethod
    def from_bytes(cls, raw: bytes) -> Record:
        try:
            record = cls.model_validate_json(raw)
        except ValidationError as exc:
            raise FormatError(f"invalid record document: {exc.error_count()} errors") from exc
        if record.schema_tag != RECORD_SCHEMA_TAG:
            raise FormatError(f"unsupported record schema: {record.schema_tag}")
        return record


class ChainEntry(BaseModel):
    """A record paired with the pointer the content store assigned to it."""

    pointer: str | None
    record: Record


class StreamState(BaseModel):
    stream_id: str
    last_pointer: str | None = None
    last_content_hash: str | None = None
    last_anchor_date: str | None = Field(default=None, pattern=_DATE_PATTERN)
    last_anchor_receipt: str | None = None
    last_anchor_pointer: str | None = None
    updated_at: datetime | None = None


class EncryptedEnvelope(BaseModel):
    """Wire shape handed to the content store.

    Field names on the wire are ``version``, ``algorithm``, ``owner``,
    ``keyContext`` and ``data``; ``data`` is base64 of nonce‖ciphertext‖tag.
    """

    model_config = ConfigDict(populate_by_name=True)

    version: StrictInt = ENVELOPE_VERSION
    algorithm: StrictStr = ENVELOPE_ALGORITHM
    owner: str
    key_context: str = Field(alias="keyContext")
    data: str

    def to_bytes(self) -> bytes:
        return encode(self.model_dump(mode="json", by_alias=True))

    @classmethod
    def from_bytes(cls, raw: bytes) -> EncryptedEnvelope:
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise FormatError(f"invalid envelope: {exc.error_count()} errors") from exc


__all__ = [
    "ENVELOPE_ALGORITHM",
    "ENVELOPE_VERSION",
    "RECORD_SCHEMA_TAG",
    "AnchorRef",
    "ChainEntry",
    "EncryptedEnvelope",
    "Record",
    "StreamState",
    "stream_id_for",
    "utc_now",
]
