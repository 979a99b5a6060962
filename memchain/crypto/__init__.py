from __future__ import annotations

from memchain.crypto.engine import (
    KeyCache,
    content_hash,
    decrypt,
    derive_key,
    encrypt,
    public_key_hex,
    secret_fingerprint,
)
from memchain.crypto.keys import SigningKeyManager, signing_key_from_hex, verify_signature

__all__ = [
    "KeyCache",
    "SigningKeyManager",
    "content_hash",
    "decrypt",
    "derive_key",
    "encrypt",
    "public_key_hex",
    "secret_fingerprint",
    "signing_key_from_hex",
    "verify_signature",
]
