from __future__ import annotations

from memchain.clients.anchor_service import HttpAnchorService
from memchain.clients.content_store import HttpContentStore
from memchain.clients.http import calculate_backoff, classify_http_error, retry_async

__all__ = [
    "HttpAnchorService",
    "HttpContentStore",
    "calculate_backoff",
    "classify_http_error",
    "retry_async",
]
