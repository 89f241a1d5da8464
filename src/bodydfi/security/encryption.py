"""Authenticated encryption for access keys stored at rest.

Uses XSalsa20-Poly1305 (NaCl SecretBox): ciphertexts carry their own random
nonce and a MAC, so tampering is detected on decrypt.
"""

from __future__ import annotations

import secrets
from functools import lru_cache

import nacl.exceptions
import nacl.secret
import nacl.utils
import structlog
from nacl.encoding import Base64Encoder, HexEncoder

from bodydfi.config import Settings, get_settings

logger = structlog.get_logger()


class DecryptionError(Exception):
    """Ciphertext was malformed or failed authentication."""


def generate_access_key(num_bytes: int = 32) -> str:
    """Random high-entropy capability handed to a buyer (hex encoded)."""
    return secrets.token_hex(num_bytes)


class AccessKeyCipher:
    """Encrypts and decrypts short secrets with a single symmetric key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != nacl.secret.SecretBox.KEY_SIZE:
            msg = f"Encryption key must be {nacl.secret.SecretBox.KEY_SIZE} bytes"
            raise ValueError(msg)
        self._box = nacl.secret.SecretBox(key)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AccessKeyCipher:
        """Build a cipher from ``BDF_ENCRYPTION_KEY`` (64 hex chars).

        Outside production an empty key yields an ephemeral random key, which
        makes previously stored ciphertexts unreadable after a restart.
        """
        settings = settings or get_settings()
        if settings.encryption_key:
            return cls(HexEncoder.decode(settings.encryption_key.encode("ascii")))
        if settings.is_production:
            msg = "BDF_ENCRYPTION_KEY must be set in production"
            raise RuntimeError(msg)
        logger.warning("encryption_key_ephemeral", environment=settings.environment)
        return cls(nacl.utils.random(nacl.secret.SecretBox.KEY_SIZE))

    def encrypt(self, plaintext: str) -> str:
        return self._box.encrypt(plaintext.encode("utf-8"), encoder=Base64Encoder).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = self._box.decrypt(ciphertext.encode("ascii"), encoder=Base64Encoder)
        except (nacl.exceptions.CryptoError, ValueError) as exc:
            raise DecryptionError("Access key ciphertext failed authentication") from exc
        return raw.decode("utf-8")


@lru_cache
def get_cipher() -> AccessKeyCipher:
    """Process-wide cipher built from the cached settings."""
    return AccessKeyCipher.from_settings()
