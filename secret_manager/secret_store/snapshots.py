"""Point-in-time copies of a workspace's secrets."""

from __future__ import annotations

from typing import List, Optional

from core.logging_utils import get_secrets_logger
from secret_store.exceptions import SnapshotError
from secret_store.repository import BaseSecretRepository
from secret_store.types import SnapshotRecord

logger = get_secrets_logger()


class SnapshotManager:
    """Writes workspace snapshots with versions 1, 2, 3, ...

    :meth:`take_snapshot` reads the latest version and then writes the next
    one. Callers needing strict monotonicity under concurrent pushes must hold
    the workspace lock around it (see ``SecretService``).
    """

    def __init__(self, repository: BaseSecretRepository):
        self.repository = repository

    def take_snapshot(self, workspace_id: str) -> SnapshotRecord:
        try:
            secrets = self.repository.find_secrets(workspace_id)
            latest = self.repository.latest_snapshot(workspace_id)
            version = latest.version + 1 if latest is not None else 1
            snapshot = self.repository.insert_snapshot(
                SnapshotRecord(workspace_id=str(workspace_id), version=version, secrets=tuple(secrets))
            )
        except Exception as exc:
            logger.error(
                "Failed to take a secret snapshot",
                extra_data={"workspace_id": str(workspace_id), "error": str(exc)},
            )
            raise SnapshotError("Failed to take a secret snapshot") from exc

        logger.scope_event(
            "snapshot_taken",
            workspace_id,
            extra_data={"version": snapshot.version, "secret_count": len(snapshot.secrets)},
        )
        return snapshot

    def latest(self, workspace_id: str) -> Optional[SnapshotRecord]:
        return self.repository.latest_snapshot(workspace_id)

    def get(self, workspace_id: str, version: int) -> Optional[SnapshotRecord]:
        return self.repository.get_snapshot(workspace_id, version)

    def list(self, workspace_id: str) -> List[SnapshotRecord]:
        """Snapshots of the workspace, newest first."""
        return self.repository.find_snapshots(workspace_id)
