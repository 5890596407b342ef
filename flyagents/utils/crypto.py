"""AES-GCM secret encryption/decryption with an explicit derived-key cache.

Ciphertexts are ``base64(nonce) + "." + base64(payload)``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from flyagents.errors import DecryptionFailed, InvalidFormat, MissingSecret, ValidationError

NONCE_BYTES = 12


class KeyCache:
    """Derived AES keys by raw key string, kept for the lifetime of the instance."""

    def __init__(self) -> None:
        self._keys: dict[str, AESGCM] = {}

    def get(self, raw_key: str) -> AESGCM:
        cipher = self._keys.get(raw_key)
        if cipher is None:
            cipher = AESGCM(hashlib.sha256(raw_key.encode()).digest())
            self._keys[raw_key] = cipher
        return cipher

    def __len__(self) -> int:
        return len(self._keys)


class SecretsVault:
    def __init__(self, cache: KeyCache) -> None:
        self._cache = cache

    def _cipher(self, key: str) -> AESGCM:
        raw = (key or "").strip()
        if not raw:
            raise ValidationError("Missing required argument: secretsEncryptionKey")
        return self._cache.get(raw)

    def encrypt(self, plaintext: str, key: str) -> str:
        cipher = self._cipher(key)
        nonce = os.urandom(NONCE_BYTES)
        payload = cipher.encrypt(nonce, plaintext.encode(), None)
        return f"{base64.b64encode(nonce).decode()}.{base64.b64encode(payload).decode()}"

    def decrypt(self, ciphertext: str, key: str) -> str:
        cipher = self._cipher(key)
        parts = (ciphertext or "").split(".")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise InvalidFormat("Invalid encrypted secret format")
        try:
            nonce = base64.b64decode(parts[0], validate=True)
            payload = base64.b64decode(parts[1], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidFormat("Invalid encrypted secret format") from exc
        try:
            return cipher.decrypt(nonce, payload, None).decode()
        except (InvalidTag, ValueError) as exc:
            raise DecryptionFailed("Unable to decrypt secret (wrong key or tampered value)") from exc


def optional_secret(*candidates: str | None) -> str | None:
    """First candidate that is non-empty after trimming, else None."""
    for value in candidates:
        normalized = (value or "").strip()
        if normalized:
            return normalized
    return None


def resolve_secret(
    name: str,
    supplied: str | None,
    stored: str | None,
    fallback: str | None = None,
) -> str:
    """Explicitly supplied value beats the stored one, which beats the fallback."""
    value = optional_secret(supplied, stored, fallback)
    if value is None:
        raise MissingSecret(name)
    return value
