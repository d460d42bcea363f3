"""Symmetric crypto primitives for workspace secrets.

Secrets are encrypted client-side with the workspace key using AES-GCM; each
field is stored as base64 ``ciphertext``, ``iv`` and ``tag``. The server only
needs the decrypt side when rendering secrets for non-native clients, the
encrypt side is provided for clients and tests.
"""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.logging_utils import get_security_logger
from secret_store.exceptions import CryptoError

logger = get_security_logger()

IV_SIZE = 16
TAG_SIZE = 16


def _normalize_key(key: str | bytes) -> bytes:
    if key is None:
        raise CryptoError("Encryption key is required")
    key_bytes = key.encode("utf-8") if isinstance(key, str) else key
    if len(key_bytes) not in (16, 24, 32):
        raise CryptoError("Encryption key must be 128, 192, or 256 bits long")
    return key_bytes


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as exc:
        raise CryptoError(f"Invalid base64 for {field}") from exc


def encrypt_symmetric(plaintext: str, key: str | bytes) -> Tuple[str, str, str]:
    """Encrypt ``plaintext`` and return base64 ``(ciphertext, iv, tag)``."""

    aesgcm = AESGCM(_normalize_key(key))
    iv = os.urandom(IV_SIZE)
    sealed = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return (
        base64.b64encode(ciphertext).decode("ascii"),
        base64.b64encode(iv).decode("ascii"),
        base64.b64encode(tag).decode("ascii"),
    )


def decrypt_symmetric(ciphertext: str, iv: str, tag: str, key: str | bytes) -> str:
    """Decrypt base64 ``ciphertext`` with its ``iv`` and authentication ``tag``."""

    aesgcm = AESGCM(_normalize_key(key))
    sealed = _b64decode(ciphertext, "ciphertext") + _b64decode(tag, "tag")
    try:
        plaintext = aesgcm.decrypt(_b64decode(iv, "iv"), sealed, None)
    except InvalidTag as exc:
        logger.error("AES-GCM authentication failed", extra_data={"ciphertext_length": len(ciphertext)})
        raise CryptoError("Authentication failed - data may be corrupted or tampered with") from exc
    except ValueError as exc:
        raise CryptoError(f"Decryption failed: {exc}") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CryptoError("Decrypted payload is not valid UTF-8") from exc


def content_hash(plaintext: str) -> str:
    """Fingerprint used by clients as the key/value hash of a secret."""

    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()
