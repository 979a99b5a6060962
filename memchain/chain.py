"""Hash-chain validation.

A record extends its predecessor when it points at the predecessor's store
pointer and content hash, stays in the same stream, and does not go back in
time. A genesis record carries no back-link at all.

Both functions are pure: they never fetch, decrypt, or recompute hashes.
Callers that need content-hash checks run ``Record.verify_content_hash``
before building the entries.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum

from pydantic import BaseModel, Field

from memchain.models.records import ChainEntry


class ViolationCode(StrEnum):
    PREV_POINTER_MISMATCH = "prev_pointer_mismatch"
    PREV_HASH_MISMATCH = "prev_hash_mismatch"
    STREAM_MISMATCH = "stream_mismatch"
    TIME_REGRESSION = "time_regression"
    GENESIS_HAS_PREV = "genesis_has_prev"


class ChainViolation(BaseModel):
    code: ViolationCode
    detail: str


class ChainValidation(BaseModel):
    ok: bool
    violations: list[ChainViolation] = Field(default_factory=list)


class ChainBreak(BaseModel):
    index: int
    pointer: str | None
    violations: list[ChainViolation]


class ChainReport(BaseModel):
    checked: int
    breaks: list[ChainBreak] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.breaks


def validate(current: ChainEntry, previous: ChainEntry | None) -> ChainValidation:
    """Check that ``current`` correctly extends ``previous`` (or is a genesis)."""
    record = current.record
    violations: list[ChainViolation] = []

    if previous is None:
        if record.chain_prev is not None or record.chain_prev_hash is not None:
            violations.append(
                ChainViolation(
                    code=ViolationCode.GENESIS_HAS_PREV,
                    detail=(
                        f"first record links to {record.chain_prev!r} "
                        f"(hash {record.chain_prev_hash!r})"
                    ),
                )
            )
        return ChainValidation(ok=not violations, violations=violations)

    prior = previous.record
    if record.chain_prev != previous.pointer:
        violations.append(
            ChainViolation(
                code=ViolationCode.PREV_POINTER_MISMATCH,
                detail=f"chain_prev {record.chain_prev!r} != previous pointer {previous.pointer!r}",
            )
        )
    if record.chain_prev_hash != prior.content_hash:
        violations.append(
            ChainViolation(
                code=ViolationCode.PREV_HASH_MISMATCH,
                detail=(
                    f"chain_prev_hash {record.chain_prev_hash!r} "
                    f"!= previous content_hash {prior.content_hash!r}"
                ),
            )
        )
    if record.stream_id != prior.stream_id:
        violations.append(
            ChainViolation(
                code=ViolationCode.STREAM_MISMATCH,
                detail=f"stream {record.stream_id!r} != previous stream {prior.stream_id!r}",
            )
        )
    if record.created_at < prior.created_at:
        violations.append(
            ChainViolation(
                code=ViolationCode.TIME_REGRESSION,
                detail=(
                    f"created_at {record.created_at.isoformat()} precedes "
                    f"previous {prior.created_at.isoformat()}"
                ),
            )
        )
    return ChainValidation(ok=not violations, violations=violations)


def verify_chain_integrity(
    entries: Sequence[ChainEntry], *, partial: bool = False
) -> ChainReport:
    """Validate an oldest-first sequence and report every break in one pass.

    With ``partial=True`` the sequence is a window onto a longer chain, so
    the first entry is not required to be a genesis record.
    """
    breaks: list[ChainBreak] = []
    previous: ChainEntry | None = None
    for index, entry in enumerate(entries):
        if index == 0 and partial:
            previous = entry
            continue
        result = validate(entry, previous)
        if not result.ok:
            breaks.append(
                ChainBreak(index=index, pointer=entry.pointer, violations=result.violations)
            )
        previous = entry
    return ChainReport(checked=len(entries), breaks=breaks)


__all__ = [
    "ChainBreak",
    "ChainReport",
    "ChainValidation",
    "ChainViolation",
    "ViolationCode",
    "validate",
    "verify_chain_integrity",
]
