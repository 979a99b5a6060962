"""HTTP client for the content-addressable store.

Uploads go to ``{base_url}/api/v0/add?pin=true`` as a multipart form with
the owner, filename and plaintext MD5 in headers; the store answers with the
pointer under ``Hash`` (or ``cid``). Reads go through ``/api/v0/cat`` on
each gateway in order, retrying retryable failures per gateway before
falling back to the next one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import httpx
from pydantic import ValidationError

from memchain.clients.http import check_response, classify_http_error, parse_json, retry_async
from memchain.crypto.engine import content_hash
from memchain.errors import IntegrityError, MemchainError, PermanentRequestError
from memchain.metrics import UPLOADS_TOTAL
from memchain.models.storage import StoredFile, UploadMetadata, UploadResult

logger = logging.getLogger(__name__)

UPLOAD_FORM_FILENAME = "encrypted.json"


class HttpContentStore:
    def __init__(
        self,
        base_url: str,
        gateway_urls: list[str] | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
        max_retries: int = 3,
        retry_base_ms: int = 1000,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._gateway_urls = [url.rstrip("/") for url in (gateway_urls or [self._base_url])]
        # Allow injection for testing
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))
        self._max_retries = max_retries
        self._retry_base_ms = retry_base_ms
        self._sleep = sleep or asyncio.sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(self, what: str, request: Callable[[], Awaitable[httpx.Response]]) -> httpx.Response:
        try:
            response = await request()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, what=what) from exc
        return check_response(response, what=what)

    async def upload(self, envelope_bytes: bytes, metadata: UploadMetadata) -> UploadResult:
        headers = {"X-Pubkey": metadata.owner, "X-Filename": metadata.filename}
        if metadata.content_md5:
            headers["X-Content-MD5"] = metadata.content_md5

        async def _attempt() -> httpx.Response:
            return await self._send(
                "upload",
                lambda: self._http.post(
                    f"{self._base_url}/api/v0/add",
                    params={"pin": "true"},
                    headers=headers,
                    files={"file": (UPLOAD_FORM_FILENAME, envelope_bytes, "application/json")},
                ),
            )

        try:
            response = await retry_async(
                _attempt,
                max_retries=self._max_retries,
                base_ms=self._retry_base_ms,
                description=f"upload {metadata.filename}",
                sleep=self._sleep,
            )
        except MemchainError:
            UPLOADS_TOTAL.labels(outcome="error").inc()
            raise

        body = parse_json(response, what="upload response")
        pointer = None
        if isinstance(body, dict):
            pointer = body.get("Hash") or body.get("cid")
        if not isinstance(pointer, str) or not pointer:
            UPLOADS_TOTAL.labels(outcome="error").inc()
            raise PermanentRequestError("upload response is missing the content pointer")

        UPLOADS_TOTAL.labels(outcome="success").inc()
        logger.info("Uploaded %s as %s", metadata.filename, pointer)
        return UploadResult(pointer=pointer)

    async def fetch(self, pointer: str) -> bytes:
        last_error: MemchainError | None = None
        for gateway in self._gateway_urls:

            async def _attempt(gateway: str = gateway) -> httpx.Response:
                return await self._send(
                    f"fetch {pointer}",
                    lambda: self._http.post(
                        f"{gateway}/api/v0/cat",
                        params={"arg": pointer},
                        headers={"Accept": "application/json"},
                    ),
                )

            try:
                response = await retry_async(
                    _attempt,
                    max_retries=self._max_retries,
                    base_ms=self._retry_base_ms,
                    description=f"fetch {pointer} from {gateway}",
                    sleep=self._sleep,
                )
            except MemchainError as exc:
                last_error = exc
                logger.warning("Fetch of %s failed on gateway %s: %s", pointer, gateway, exc)
                continue
            return response.content

        logger.error("Fetch of %s failed on all gateways", pointer)
        if last_error is None:
            raise PermanentRequestError("no content gateways configured")
        raise last_error

    async def fetch_and_verify(self, pointer: str, expected_hash: str) -> bytes:
        data = await self.fetch(pointer)
        actual = content_hash(data)
        if actual != expected_hash:
            raise IntegrityError(
                f"checksum mismatch for {pointer}: expected {expected_hash}, got {actual}"
            )
        return data

    async def list_files(self, owner: str) -> list[StoredFile]:
        response = await self._send(
            "list files",
            lambda: self._http.get(f"{self._base_url}/index/files", params={"pubkey": owner}),
        )
        body = parse_json(response, what="file index")
        entries = body.get("files", []) if isinstance(body, dict) else body
        if not isinstance(entries, list):
            raise PermanentRequestError("file index is not a list")

        files: list[StoredFile] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            pointer = entry.get("cid") or entry.get("Hash") or entry.get("pointer")
            if not pointer:
                continue
            try:
                files.append(
                    StoredFile(
                        pointer=pointer,
                        filename=entry.get("filename") or entry.get("name"),
                        timestamp=entry.get("timestamp") or entry.get("created_at"),
                    )
                )
            except ValidationError:
                logger.warning("Skipping unparseable file index entry for %s", pointer)
        return files


__all__ = ["HttpContentStore"]
