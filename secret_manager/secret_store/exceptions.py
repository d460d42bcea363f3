"""Custom exceptions for the secret store domain."""

from typing import Optional


class SecretStoreError(Exception):
    """Base exception for secret store operations."""

    def __init__(self, message: str, *, recoverable: Optional[bool] = None):
        super().__init__(message)
        self.recoverable = recoverable


class ReconciliationError(SecretStoreError):
    """Fetching current state, applying the diff or appending versions failed."""


class SnapshotError(SecretStoreError):
    """Reading the latest snapshot or writing the new one failed."""


class PullError(SecretStoreError):
    """Querying shared or personal secrets failed."""


class ReformatError(SecretStoreError):
    """Reshaping a pulled record failed."""


class DecryptError(SecretStoreError):
    """Decrypting a secret key or value failed."""


class CryptoError(SecretStoreError):
    """Low-level symmetric encryption or decryption failure."""
