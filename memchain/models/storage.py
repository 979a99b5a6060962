from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class UploadMetadata(BaseModel):
    """Headers the content store indexes an upload under."""

    owner: str
    filename: str
    content_md5: str | None = None


class UploadResult(BaseModel):
    pointer: str


class StoredFile(BaseModel):
    pointer: str
    filename: str | None = None
    timestamp: datetime | None = None


__all__ = ["StoredFile", "UploadMetadata", "UploadResult"]
