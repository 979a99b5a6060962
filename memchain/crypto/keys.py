from __future__ import annotations

import base64
import binascii

import keyring
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from memchain.crypto.engine import public_key_hex

_PRIVATE_KEY_LABEL = "ed25519:private"
_PUBLIC_KEY_LABEL = "ed25519:public"
_SEED_SIZE = 32


def signing_key_from_hex(seed_hex: str) -> Ed25519PrivateKey:
    """Build an owner signing key from a 32-byte hex seed."""
    try:
        seed = bytes.fromhex(seed_hex.strip())
    except ValueError as exc:
        raise ValueError("signing key seed is not valid hex") from exc
    if len(seed) != _SEED_SIZE:
        raise ValueError(f"signing key seed must be {_SEED_SIZE} bytes")
    return Ed25519PrivateKey.from_private_bytes(seed)


def verify_signature(public_key_hex_value: str, payload: bytes, signature: bytes) -> tuple[bool, str]:
    try:
        public_key_raw = bytes.fromhex(public_key_hex_value)
    except ValueError:
        return False, "Invalid public key encoding"

    if len(public_key_raw) != 32:
        return False, "Invalid public key length"

    try:
        Ed25519PublicKey.from_public_bytes(public_key_raw).verify(signature, payload)
    except InvalidSignature:
        return False, "Invalid signature"

    return True, "Valid"


class SigningKeyManager:
    """Keeps owner signing seeds in the OS keyring.

    The seed is the only secret in the system: stream encryption keys and
    anchor signatures are both derived from it.
    """

    def __init__(self, service_name: str = "memchain") -> None:
        self._service_name = service_name

    def has_keypair(self, owner: str) -> bool:
        return self._get_secret(owner, _PRIVATE_KEY_LABEL) is not None

    def generate_keypair(self, owner: str) -> str:
        private_key = Ed25519PrivateKey.generate()
        seed = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_hex = public_key_hex(private_key)

        self._set_secret(owner, _PRIVATE_KEY_LABEL, base64.b64encode(seed).decode("utf-8"))
        self._set_secret(owner, _PUBLIC_KEY_LABEL, public_hex)
        return public_hex

    def load_signing_key(self, owner: str) -> Ed25519PrivateKey:
        encoded = self._get_secret(owner, _PRIVATE_KEY_LABEL)
        if encoded is None:
            raise KeyError(f"no signing key found for owner '{owner}'")

        try:
            seed = base64.b64decode(encoded.encode("utf-8"), validate=True)
        except binascii.Error as exc:
            raise ValueError("stored signing key is not valid base64") from exc

        if len(seed) != _SEED_SIZE:
            raise ValueError("stored signing key has invalid length")
        return Ed25519PrivateKey.from_private_bytes(seed)

    def get_public_key(self, owner: str) -> str:
        stored = self._get_secret(owner, _PUBLIC_KEY_LABEL)
        if stored is not None:
            return stored
        return public_key_hex(self.load_signing_key(owner))

    def _credential_name(self, owner: str, label: str) -> str:
        return f"{owner}:{label}"

    def _set_secret(self, owner: str, label: str, value: str) -> None:
        keyring.set_password(self._service_name, self._credential_name(owner, label), value)

    def _get_secret(self, owner: str, label: str) -> str | None:
        return keyring.get_password(self._service_name, self._credential_name(owner, label))


__all__ = ["SigningKeyManager", "signing_key_from_hex", "verify_signature"]
