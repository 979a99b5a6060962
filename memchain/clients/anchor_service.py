"""HTTP client for the anchor (ledger) service.

``submit`` posts the anchor payload with the owner's Ed25519 public key and
signature to ``{endpoint}/anchors``; ``verify`` reads the receipt back from
``{endpoint}/anchors/{receipt_id}`` and compares the recorded payload bytes
with the ones the caller rebuilt. Endpoints are tried in order, and every
request waits out a minimum interval since the previous one.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from collections.abc import Awaitable, Callable

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import ValidationError

from memchain.clients.http import check_response, classify_http_error, parse_json, retry_async
from memchain.crypto.engine import public_key_hex
from memchain.errors import MemchainError, PermanentRequestError, TransientIOError
from memchain.metrics import ANCHORS_TOTAL
from memchain.models.anchors import AnchorReceipt, AnchorVerification

logger = logging.getLogger(__name__)

DEFAULT_MIN_REQUEST_INTERVAL_S = 0.1


class HttpAnchorService:
    def __init__(
        self,
        endpoints: list[str],
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
        max_retries: int = 3,
        retry_base_ms: int = 1000,
        min_request_interval_s: float = DEFAULT_MIN_REQUEST_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("at least one anchor endpoint is required")
        self._endpoints = [url.rstrip("/") for url in endpoints]
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))
        self._max_retries = max_retries
        self._retry_base_ms = retry_base_ms
        self._min_interval_s = min_request_interval_s
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._last_request_at: float | None = None
        self._rate_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _rate_limit(self) -> None:
        async with self._rate_lock:
            if self._last_request_at is not None:
                wait = self._min_interval_s - (self._clock() - self._last_request_at)
                if wait > 0:
                    await self._sleep(wait)
            self._last_request_at = self._clock()

    async def _request(self, what: str, send: Callable[[str], Awaitable[httpx.Response]]) -> httpx.Response:
        """Run ``send(endpoint)`` with retries, falling back across endpoints on transient errors."""
        last_error: MemchainError | None = None
        for endpoint in self._endpoints:

            async def _attempt(endpoint: str = endpoint) -> httpx.Response:
                await self._rate_limit()
                try:
                    response = await send(endpoint)
                except httpx.HTTPError as exc:
                    raise classify_http_error(exc, what=what) from exc
                return check_response(response, what=what)

            try:
                return await retry_async(
                    _attempt,
                    max_retries=self._max_retries,
                    base_ms=self._retry_base_ms,
                    description=f"{what} via {endpoint}",
                    sleep=self._sleep,
                )
            except TransientIOError as exc:
                last_error = exc
                logger.warning("%s failed on %s, trying next endpoint: %s", what, endpoint, exc)
        assert last_error is not None
        logger.error("%s failed on all anchor endpoints", what)
        raise last_error

    async def submit(self, payload: bytes, signing_identity: Ed25519PrivateKey) -> AnchorReceipt:
        body = {
            "payload": base64.b64encode(payload).decode("ascii"),
            "public_key": public_key_hex(signing_identity),
            "signature": base64.b64encode(signing_identity.sign(payload)).decode("ascii"),
        }
        try:
            response = await self._request(
                "anchor submit", lambda endpoint: self._http.post(f"{endpoint}/anchors", json=body)
            )
            data = parse_json(response, what="anchor receipt")
            if not isinstance(data, dict):
                raise PermanentRequestError("anchor receipt is not an object")
            receipt = AnchorReceipt(
                receipt_id=data.get("receipt_id") or data.get("id"),
                sequence_number=data.get("sequence_number"),
                time=data.get("time"),
            )
        except ValidationError as exc:
            ANCHORS_TOTAL.labels(outcome="error").inc()
            raise PermanentRequestError(f"malformed anchor receipt: {exc.error_count()} errors") from exc
        except MemchainError:
            ANCHORS_TOTAL.labels(outcome="error").inc()
            raise

        ANCHORS_TOTAL.labels(outcome="success").inc()
        logger.info("Anchor submitted, receipt %s", receipt.receipt_id)
        return receipt

    async def verify(self, receipt_id: str, expected_payload: bytes) -> AnchorVerification:
        try:
            response = await self._request(
                f"anchor lookup {receipt_id}",
                lambda endpoint: self._http.get(f"{endpoint}/anchors/{receipt_id}"),
            )
        except PermanentRequestError as exc:
            if exc.status_code == 404:
                return AnchorVerification(valid=False, error="receipt not found")
            raise

        data = parse_json(response, what="anchor record")
        encoded = data.get("payload") if isinstance(data, dict) else None
        if not isinstance(encoded, str):
            return AnchorVerification(valid=False, error="anchor record has no payload")
        try:
            recorded = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return AnchorVerification(valid=False, error="anchor payload is not base64")

        if recorded != expected_payload:
            return AnchorVerification(valid=False, payload=recorded, error="payload mismatch")
        return AnchorVerification(valid=True, payload=recorded)


__all__ = ["DEFAULT_MIN_REQUEST_INTERVAL_S", "HttpAnchorService"]
