"""
Token encryption — encrypt / decrypt tokens at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) from the ``cryptography`` library.
The Fernet key is derived with PBKDF2-HMAC-SHA256 from
``config.token_encryption_key`` (env var: ``TOKEN_ENCRYPTION_KEY``) and a
per-install random salt, so rotating the salt re-keys every stored secret.

There is no plaintext fallback: a missing key is a configuration error.
"""

from __future__ import annotations

import base64
import hashlib
import os

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from connectors.errors import ConfigurationError, CorruptionError

_SALT_BYTES = 16


def new_salt() -> str:
    """Generate a fresh random salt (URL-safe base64 text)."""
    return base64.urlsafe_b64encode(os.urandom(_SALT_BYTES)).decode()


def salt_id(salt: str) -> str:
    """Short, stable identifier for a salt; stored alongside each ciphertext."""
    return hashlib.sha256(salt.encode()).hexdigest()[:12]


class TokenCipher:
    """Fernet cipher bound to one (secret, salt) pair."""

    def __init__(self, secret: str, salt: str, iterations: int = 100_000):
        if not secret:
            raise ConfigurationError(
                "token_encryption_key is required to store tokens",
                missing=["token_encryption_key"],
            )
        self.salt = salt
        self.salt_id = salt_id(salt)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=iterations,
        )
        self._fernet = Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode())))

    def encrypt(self, plaintext: str) -> str:
        """Return the Fernet ciphertext (URL-safe base64)."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt *ciphertext*.

        Raises ``CorruptionError`` on tampered data, a wrong key/salt, or
        anything that is not a Fernet token.
        """
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError, TypeError) as exc:
            raise CorruptionError("Stored secret could not be decrypted", original_error=exc) from exc
