"""Append-only version history of secrets."""

from __future__ import annotations

from typing import List, Sequence

from secret_store.repository import BaseSecretRepository
from secret_store.types import EMPTY_MATERIAL, EncryptedMaterial, SecretVersionRecord


class VersionLedger:
    """Records every create, update and delete of a secret.

    Version numbers come from the caller (``1`` for a new secret, the stored
    version plus one for an update); the ledger never derives them. Rows are
    never changed afterwards except for the ``is_deleted`` flag that
    :meth:`mark_deleted` sets when the parent secret is hard-deleted.
    """

    def __init__(self, repository: BaseSecretRepository):
        self.repository = repository

    def append_version(
        self,
        secret_id: str,
        workspace_id: str,
        version: int,
        key: EncryptedMaterial,
        value: EncryptedMaterial,
        *,
        comment: EncryptedMaterial = EMPTY_MATERIAL,
        is_deleted: bool = False,
    ) -> SecretVersionRecord:
        record = SecretVersionRecord(
            secret_id=secret_id,
            workspace_id=workspace_id,
            version=version,
            key=key,
            value=value,
            comment=comment,
            is_deleted=is_deleted,
        )
        self.append_versions([record])
        return record

    def append_versions(self, versions: Sequence[SecretVersionRecord]) -> None:
        for record in versions:
            if record.version < 1:
                raise ValueError(f"Invalid version {record.version} for secret {record.secret_id}")
        if versions:
            self.repository.insert_versions(list(versions))

    def mark_deleted(self, secret_ids: Sequence[str]) -> int:
        if not secret_ids:
            return 0
        return self.repository.mark_versions_deleted(list(secret_ids))

    def history(self, secret_id: str) -> List[SecretVersionRecord]:
        """Versions of ``secret_id`` in ascending order."""
        return self.repository.find_versions(secret_id)
