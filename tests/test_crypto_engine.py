from __future__ import annotations

import base64

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from memchain.crypto.engine import (
    KeyCache,
    content_hash,
    decrypt,
    derive_key,
    encrypt,
    secret_fingerprint,
)
from memchain.errors import AuthenticationError, FormatError
from memchain.models.records import EncryptedEnvelope


class _TickClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_derive_key_is_deterministic(signing_key: Ed25519PrivateKey) -> None:
    first = derive_key(signing_key, "ctx")
    second = derive_key(signing_key, "ctx")
    assert first == second
    assert len(first) == 32
    assert derive_key(signing_key, "other") != first


def test_different_secrets_derive_different_keys(signing_key: Ed25519PrivateKey) -> None:
    assert derive_key(Ed25519PrivateKey.generate(), "ctx") != derive_key(signing_key, "ctx")


def test_round_trip(signing_key: Ed25519PrivateKey) -> None:
    key = derive_key(signing_key, "ctx")
    envelope = encrypt(b"remember this", key, owner="alice", key_context="ctx")
    assert envelope.version == 1
    assert envelope.algorithm == "AES-256-GCM"
    assert decrypt(envelope, key) == b"remember this"


def test_nonce_is_fresh_per_call(signing_key: Ed25519PrivateKey) -> None:
    key = derive_key(signing_key, "ctx")
    a = encrypt(b"same", key, owner="alice", key_context="ctx")
    b = encrypt(b"same", key, owner="alice", key_context="ctx")
    assert a.data != b.data
    assert base64.b64decode(a.data)[:12] != base64.b64decode(b.data)[:12]


def test_wrong_key_raises_authentication_error(signing_key: Ed25519PrivateKey) -> None:
    envelope = encrypt(b"secret", derive_key(signing_key, "ctx"), owner="alice", key_context="ctx")
    with pytest.raises(AuthenticationError):
        decrypt(envelope, derive_key(signing_key, "other"))


def test_tampered_ciphertext_raises_authentication_error(signing_key: Ed25519PrivateKey) -> None:
    key = derive_key(signing_key, "ctx")
    envelope = encrypt(b"secret", key, owner="alice", key_context="ctx")
    blob = bytearray(base64.b64decode(envelope.data))
    blob[-1] ^= 0x01
    tampered = envelope.model_copy(update={"data": base64.b64encode(bytes(blob)).decode()})
    with pytest.raises(AuthenticationError):
        decrypt(tampered, key)


def test_unknown_version_and_algorithm_are_rejected(signing_key: Ed25519PrivateKey) -> None:
    key = derive_key(signing_key, "ctx")
    envelope = encrypt(b"x", key, owner="alice", key_context="ctx")
    with pytest.raises(FormatError):
        decrypt(envelope.model_copy(update={"version": 2}), key)
    with pytest.raises(FormatError):
        decrypt(envelope.model_copy(update={"algorithm": "XChaCha20"}), key)


@pytest.mark.parametrize(
    "header",
    [
        '"version":"1","algorithm":"AES-256-GCM"',
        '"version":1.0,"algorithm":"AES-256-GCM"',
    ],
)
def test_envelope_header_types_are_not_coerced(header: str) -> None:
    raw = ("{" + header + ',"owner":"alice","keyContext":"ctx","data":"AAAA"}').encode()
    with pytest.raises(FormatError):
        EncryptedEnvelope.from_bytes(raw)


def test_short_or_non_base64_data_is_a_format_error(signing_key: Ed25519PrivateKey) -> None:
    key = derive_key(signing_key, "ctx")
    short = EncryptedEnvelope(owner="a", key_context="ctx", data=base64.b64encode(b"tiny").decode())
    with pytest.raises(FormatError):
        decrypt(short, key)
    garbage = EncryptedEnvelope(owner="a", key_context="ctx", data="***")
    with pytest.raises(FormatError):
        decrypt(garbage, key)


def test_envelope_wire_shape_uses_key_context_alias(signing_key: Ed25519PrivateKey) -> None:
    envelope = encrypt(b"x", derive_key(signing_key, "ctx"), owner="alice", key_context="ctx")
    raw = envelope.to_bytes()
    assert b'"keyContext":"ctx"' in raw
    assert EncryptedEnvelope.from_bytes(raw) == envelope


def test_content_hash_is_sha256_hex() -> None:
    assert content_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert content_hash("abc") == content_hash(b"abc")


def test_key_cache_hits_and_expires(signing_key: Ed25519PrivateKey) -> None:
    clock = _TickClock()
    cache = KeyCache(ttl_s=10.0, clock=clock)
    key = derive_key(signing_key, "ctx", cache=cache)
    fingerprint = secret_fingerprint(signing_key)
    assert cache.get(fingerprint, "ctx") == key

    clock.now = 10.0
    assert cache.get(fingerprint, "ctx") is None
    assert len(cache) == 0


def test_key_cache_evicts_least_recently_used() -> None:
    cache = KeyCache(max_entries=2)
    cache.put("fp", "a", b"a" * 32)
    cache.put("fp", "b", b"b" * 32)
    assert cache.get("fp", "a") is not None
    cache.put("fp", "c", b"c" * 32)

    assert cache.get("fp", "b") is None
    assert cache.get("fp", "a") == b"a" * 32
    assert cache.get("fp", "c") == b"c" * 32
