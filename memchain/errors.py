"""Error taxonomy shared by the crypto engine, clients, and job worker.

Retry decisions are made by the job worker, not the queue. The worker asks
``is_retryable()`` which errors are worth spending backoff on; everything
else is abandoned immediately and left in the queue log for inspection.
"""

from __future__ import annotations


class MemchainError(Exception):
    """Base class for every error raised by memchain components."""


class TransientIOError(MemchainError):
    """Timeout, transport failure, 5xx or 429 from an external service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermanentRequestError(MemchainError):
    """Request rejected for a reason retrying will not fix (4xx, bad response)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IntegrityError(MemchainError):
    """Hash, checksum or chain mismatch. Surfaced as a data-integrity finding."""


class AuthenticationError(MemchainError):
    """Authenticated decryption failed: wrong key or tampered ciphertext."""


class FormatError(MemchainError):
    """Unsupported envelope version, algorithm, or record schema."""


_NON_RETRYABLE: tuple[type[BaseException], ...] = (
    PermanentRequestError,
    IntegrityError,
    AuthenticationError,
    FormatError,
)


def is_retryable(exc: BaseException) -> bool:
    """Return True when a failed job should consume retry budget.

    Unclassified exceptions count as retryable so an unexpected bug still
    ends up abandoned with its last error rather than dropped.
    """
    if isinstance(exc, TransientIOError):
        return True
    return not isinstance(exc, _NON_RETRYABLE)


__all__ = [
    "AuthenticationError",
    "FormatError",
    "IntegrityError",
    "MemchainError",
    "PermanentRequestError",
    "TransientIOError",
    "is_retryable",
]
