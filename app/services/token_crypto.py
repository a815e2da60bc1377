"""Encryption for provider OAuth tokens at rest (Fernet, symmetric).

The key comes from TOKEN_ENCRYPTION_KEY. Generate one with:
    flask generate-token-key
"""

import logging

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app

logger = logging.getLogger(__name__)


def _cipher():
    key = current_app.config.get("TOKEN_ENCRYPTION_KEY")
    if not key:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY is not configured")
    return Fernet(key.encode() if isinstance(key, str) else key)


def generate_key():
    return Fernet.generate_key().decode()


def encrypt_token(token):
    """Encrypt a token for storage. None stays None."""
    if token is None:
        return None
    return _cipher().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token):
    """Decrypt a stored token.

    Returns None for an empty value or a ciphertext written with another
    key; callers treat that as "no credential" and ask for a reconnect.
    """
    if not encrypted_token:
        return None
    try:
        return _cipher().decrypt(encrypted_token.encode()).decode()
    except InvalidToken:
        logger.error("Stored provider token cannot be decrypted with the current key")
        return None
