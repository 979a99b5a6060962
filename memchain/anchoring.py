"""Anchor cadence policy and the canonical anchor payload.

The payload is a pipe-delimited UTF-8 string::

    MemChain|v1|<YYYY-MM-DD>|<pointer>|<content_hash>|<prev_content_hash or null>

Exactly these bytes are signed and submitted, and verification rebuilds them
from the stored record to compare against what the ledger returns.
"""

from __future__ import annotations

from memchain.models.anchors import AnchorPolicy
from memchain.models.records import StreamState

ANCHOR_TAG = "MemChain"
ANCHOR_VERSION = "v1"


def should_anchor(
    state: StreamState, policy: AnchorPolicy, today: str, *, enabled: bool = True
) -> bool:
    """Decide whether the record just chained onto ``state`` gets anchored."""
    if not enabled:
        return False
    match policy:
        case AnchorPolicy.EVERY_RECORD:
            return True
        case AnchorPolicy.DAILY:
            return state.last_anchor_date != today


def build_anchor_payload(
    pointer: str, content_hash: str, prev_content_hash: str | None, date: str
) -> bytes:
    fields = [
        ANCHOR_TAG,
        ANCHOR_VERSION,
        date,
        pointer,
        content_hash,
        prev_content_hash if prev_content_hash is not None else "null",
    ]
    return "|".join(fields).encode("utf-8")


def anchor_dedup_key(policy: AnchorPolicy, stream_id: str, pointer: str, date: str) -> str:
    """Queue dedup key for an ANCHOR job.

    Under DAILY one key per stream per day, so a second same-day record
    joins the pending job instead of adding another.
    """
    match policy:
        case AnchorPolicy.DAILY:
            return f"anchor:{stream_id}:{date}"
        case AnchorPolicy.EVERY_RECORD:
            return f"anchor:{stream_id}:{pointer}"


__all__ = [
    "ANCHOR_TAG",
    "ANCHOR_VERSION",
    "anchor_dedup_key",
    "build_anchor_payload",
    "should_anchor",
]
