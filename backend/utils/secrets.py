"""Helpers for encrypting/decrypting wallet key material stored in the database."""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from utils.logger import get_logger

logger = get_logger("secrets")

_ENC_PREFIX = "enc:v1:"
_FERNET_CACHE = None


class SecretDecryptionError(Exception):
    """Stored secret is missing, not encrypted, or cannot be decrypted."""


def _derive_fernet_key(raw_key: str) -> bytes:
    """Derive a Fernet-compatible key from arbitrary input."""
    # Fernet expects 32-byte URL-safe base64 data.
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _get_fernet() -> Optional[Fernet]:
    """Return initialized Fernet instance or None if APP_SECRETS_KEY is unset."""
    global _FERNET_CACHE
    if _FERNET_CACHE is not None:
        return _FERNET_CACHE or None

    secret_key = os.getenv("APP_SECRETS_KEY")
    if not secret_key:
        _FERNET_CACHE = False
        return None

    _FERNET_CACHE = Fernet(_derive_fernet_key(secret_key))
    return _FERNET_CACHE


def reset_secret_cache() -> None:
    """Forget the cached Fernet instance (APP_SECRETS_KEY changed)."""
    global _FERNET_CACHE
    _FERNET_CACHE = None


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value and value.startswith(_ENC_PREFIX))


def encrypt_secret(value: Optional[str]) -> Optional[str]:
    """Encrypt a plaintext secret value. Returns original when no key is configured."""
    if value is None or value == "":
        return None
    if is_encrypted(value):
        return value
    fernet = _get_fernet()
    if not fernet:
        logger.warning("APP_SECRETS_KEY not set; secret stored without encryption")
        return value
    token = fernet.encrypt(value.encode("utf-8")).decode("utf-8")
    return _ENC_PREFIX + token


def decrypt_secret(value: Optional[str]) -> Optional[str]:
    """Decrypt a stored secret value. Plaintext values are returned unchanged."""
    if value is None or value == "":
        return None
    if not is_encrypted(value):
        return value
    fernet = _get_fernet()
    if not fernet:
        logger.warning("Encrypted secret cannot be decrypted without APP_SECRETS_KEY")
        return None
    token = value[len(_ENC_PREFIX) :]
    try:
        return fernet.decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.warning("Failed to decrypt stored secret", error=type(exc).__name__)
        return None


def decrypt_wallet_secret(value: Optional[str]) -> str:
    """Decrypt custody key material on demand.

    Unlike :func:`decrypt_secret`, plaintext rows are refused: a signing key
    is only trusted when it was written through :func:`encrypt_secret`.
    """
    if not value:
        raise SecretDecryptionError("No key material stored for wallet")
    if not is_encrypted(value):
        raise SecretDecryptionError("Stored key material is not encrypted")
    plaintext = decrypt_secret(value)
    if not plaintext:
        raise SecretDecryptionError("Stored key material could not be decrypted")
    return plaintext
