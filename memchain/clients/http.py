"""Shared httpx plumbing: error classification and bounded retry.

Every external call leaves this layer either with a result or with one of
the memchain error types, so callers and the job worker never see raw
httpx exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

from memchain.errors import MemchainError, PermanentRequestError, TransientIOError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_BASE_MS = 1000
DEFAULT_RETRY_MAX_MS = 30_000


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def classify_http_error(exc: httpx.HTTPError, *, what: str = "request") -> MemchainError:
    """Translate an httpx exception into the memchain taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"{what} failed: HTTP {status}"
        if is_retryable_status(status):
            return TransientIOError(message, status_code=status)
        return PermanentRequestError(message, status_code=status)
    if isinstance(exc, httpx.TimeoutException):
        return TransientIOError(f"{what} timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return TransientIOError(f"{what} transport error: {exc}")
    return PermanentRequestError(f"{what} failed: {exc}")


def check_response(response: httpx.Response, *, what: str = "request") -> httpx.Response:
    """``raise_for_status`` that raises classified memchain errors."""
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise classify_http_error(exc, what=what) from exc
    return response


def parse_json(response: httpx.Response, *, what: str = "response") -> object:
    try:
        return response.json()
    except ValueError as exc:
        raise PermanentRequestError(f"{what} is not valid JSON") from exc


def calculate_backoff(
    attempt: int,
    base_ms: int = DEFAULT_RETRY_BASE_MS,
    max_ms: int = DEFAULT_RETRY_MAX_MS,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Capped exponential backoff in milliseconds with up to 10% jitter."""
    exponential = min(base_ms * 2**attempt, max_ms)
    return exponential + rng() * exponential * 0.1


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_ms: int = DEFAULT_RETRY_BASE_MS,
    max_ms: int = DEFAULT_RETRY_MAX_MS,
    description: str = "request",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Call ``fn`` up to ``max_retries + 1`` times, retrying retryable errors only."""
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not is_retryable(exc):
                raise
            backoff_ms = calculate_backoff(attempt, base_ms, max_ms)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.0fms: %s",
                description,
                attempt + 1,
                max_retries + 1,
                backoff_ms,
                exc,
            )
            await sleep(backoff_ms / 1000)
            attempt += 1


__all__ = [
    "calculate_backoff",
    "check_response",
    "classify_http_error",
    "is_retryable_status",
    "parse_json",
    "retry_async",
]
