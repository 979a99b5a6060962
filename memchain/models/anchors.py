from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class AnchorPolicy(StrEnum):
    """How often a stream submits its chain head to the ledger."""

    EVERY_RECORD = "every_record"
    DAILY = "daily"


class AnchorReceipt(BaseModel):
    receipt_id: str
    sequence_number: int | None = None
    time: datetime | None = None


class AnchorVerification(BaseModel):
    valid: bool
    payload: bytes | None = None
    error: str | None = None


__all__ = ["AnchorPolicy", "AnchorReceipt", "AnchorVerification"]
