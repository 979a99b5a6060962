"""Key derivation, authenticated encryption, and content hashing.

The symmetric key for a stream is never stored. It is recomputed as
``sha256(Ed25519 signature over the key context)``; Ed25519 signatures are
deterministic, so anyone holding the signing secret derives the same key.
Derived keys live only in a :class:`KeyCache` the caller owns and passes in.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import time
from collections import OrderedDict
from collections.abc import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from memchain.errors import AuthenticationError, FormatError
from memchain.models.records import ENVELOPE_ALGORITHM, ENVELOPE_VERSION, EncryptedEnvelope

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

DEFAULT_KEY_CACHE_TTL_S = 600.0
DEFAULT_KEY_CACHE_MAX_ENTRIES = 64


class KeyCache:
    """Bounded TTL cache of derived keys, keyed by (secret fingerprint, context).

    Entries expire ``ttl_s`` after insertion according to ``clock``; when
    full, the least recently used entry is evicted. Nothing is persisted.
    """

    def __init__(
        self,
        ttl_s: float = DEFAULT_KEY_CACHE_TTL_S,
        max_entries: int = DEFAULT_KEY_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl_s = ttl_s
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[tuple[str, str], tuple[bytes, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, fingerprint: str, context: str) -> bytes | None:
        cache_key = (fingerprint, context)
        entry = self._entries.get(cache_key)
        if entry is None:
            return None
        key, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[cache_key]
            return None
        self._entries.move_to_end(cache_key)
        return key

    def put(self, fingerprint: str, context: str, key: bytes) -> None:
        cache_key = (fingerprint, context)
        self._entries[cache_key] = (key, self._clock() + self._ttl_s)
        self._entries.move_to_end(cache_key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()


def content_hash(data: bytes | str) -> str:
    """SHA-256 hex digest used as the chain's content identifier."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def public_key_hex(signing_key: Ed25519PrivateKey) -> str:
    raw = signing_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return raw.hex()


def secret_fingerprint(signing_key: Ed25519PrivateKey) -> str:
    """Short stable identifier for a signing key; safe to log."""
    return content_hash(bytes.fromhex(public_key_hex(signing_key)))[:16]


def derive_key(
    signing_key: Ed25519PrivateKey,
    context: str,
    *,
    cache: KeyCache | None = None,
) -> bytes:
    """Derive the 32-byte AES key for *context* from *signing_key*."""
    fingerprint = secret_fingerprint(signing_key)
    if cache is not None:
        cached = cache.get(fingerprint, context)
        if cached is not None:
            return cached

    signature = signing_key.sign(context.encode("utf-8"))
    key = hashlib.sha256(signature).digest()

    if cache is not None:
        cache.put(fingerprint, context, key)
    return key


def seal(plaintext: bytes, key: bytes) -> bytes:
    """AES-256-GCM with a fresh random nonce. Returns nonce‖ciphertext‖tag."""
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes")
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def open_sealed(blob: bytes, key: bytes) -> bytes:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes")
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise FormatError("ciphertext shorter than nonce and tag")
    nonce, body = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as exc:
        raise AuthenticationError("authentication tag mismatch") from exc


def encrypt(
    plaintext: bytes | str,
    key: bytes,
    *,
    owner: str,
    key_context: str,
) -> EncryptedEnvelope:
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    blob = seal(plaintext, key)
    return EncryptedEnvelope(
        version=ENVELOPE_VERSION,
        algorithm=ENVELOPE_ALGORITHM,
        owner=owner,
        key_context=key_context,
        data=base64.b64encode(blob).decode("ascii"),
    )


def decrypt(envelope: EncryptedEnvelope, key: bytes) -> bytes:
    """Open an envelope. Unknown versions and algorithms are rejected, never guessed."""
    if envelope.version != ENVELOPE_VERSION:
        raise FormatError(f"unsupported envelope version: {envelope.version}")
    if envelope.algorithm != ENVELOPE_ALGORITHM:
        raise FormatError(f"unsupported algorithm: {envelope.algorithm}")
    try:
        blob = base64.b64decode(envelope.data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise FormatError("envelope data is not valid base64") from exc
    return open_sealed(blob, key)


__all__ = [
    "KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "KeyCache",
    "content_hash",
    "decrypt",
    "derive_key",
    "encrypt",
    "open_sealed",
    "public_key_hex",
    "seal",
    "secret_fingerprint",
]
