"""
core/encryption.py -- Encryption-at-rest capability for stored secrets.

The auth core never does cryptography on secrets itself; it receives a
SecretCipher and calls encrypt()/decrypt(). FernetCipher is the default
implementation (AES-128-CBC + HMAC-SHA256 via the cryptography package).

ENCRYPTION_KEY may be any string. It is stretched to the 32 url-safe base64
bytes Fernet expects with SHA-256, so operators do not have to generate a
Fernet key by hand.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from core.config import Settings

logger = logging.getLogger("dispatch.encryption")


class SecretCipher(Protocol):
    """Anything that can round-trip a secret string through ciphertext."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class DecryptionError(Exception):
    """Raised when stored ciphertext cannot be decrypted with the current key."""


class FernetCipher:
    def __init__(self, key: str) -> None:
        if not key:
            raise ValueError("FernetCipher requires a non-empty key")
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            # Wrong ENCRYPTION_KEY or a tampered row. Never echo the ciphertext.
            raise DecryptionError("stored secret could not be decrypted") from exc


def build_cipher(settings: Settings) -> FernetCipher | None:
    """Return a cipher for ENCRYPTION_KEY, or None when it is not configured."""
    if not settings.encryption_key:
        logger.warning("ENCRYPTION_KEY is not set; secret encryption at rest is unavailable")
        return None
    return FernetCipher(settings.encryption_key)
