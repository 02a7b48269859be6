from __future__ import annotations

import base64
import hashlib
import logging
import os

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def derive_key(secret: str, context: str = "") -> bytes:
    """Derive a Fernet-compatible key from a secret string using SHA-256."""
    digest = hashlib.sha256((context + secret).encode()).digest()
    return base64.urlsafe_b64encode(digest)


def _get_encryption_key() -> bytes:
    """Get the encryption key from environment, deriving it if needed."""
    secret = os.getenv("SETTINGS_ENCRYPTION_KEY")
    if not secret:
        raise RuntimeError(
            "SETTINGS_ENCRYPTION_KEY environment variable is required for encryption"
        )
    return derive_key(secret)


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string and return base64-encoded ciphertext."""
    f = Fernet(_get_encryption_key())
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a base64-encoded ciphertext and return plaintext."""
    f = Fernet(_get_encryption_key())
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt value - invalid token or wrong key")
        raise ValueError("Decryption failed - check SETTINGS_ENCRYPTION_KEY")


def decrypt_client_secret(stored: str) -> str:
    """Decrypt a stored client secret, accepting legacy plaintext rows."""
    if not stored:
        return stored
    if not os.getenv("SETTINGS_ENCRYPTION_KEY"):
        return stored
    try:
        return decrypt_value(stored)
    except ValueError:
        logger.warning("Client secret is not encrypted; treating as legacy plaintext")
        return stored
