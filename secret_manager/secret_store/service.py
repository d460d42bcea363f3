"""
Secret store service layer.
Handles push reconciliation, pulls, snapshots and version history.
"""

from typing import Iterable, List, Optional

from django.conf import settings

from core.logging_utils import get_secrets_logger
from secret_store import metrics
from secret_store.exceptions import PullError, ReconciliationError, SecretStoreError, SnapshotError
from secret_store.formatter import SecretFormat, decrypt_secrets, reformat_secrets
from secret_store.ledger import VersionLedger
from secret_store.reconciler import SecretReconciler
from secret_store.repository import BaseSecretRepository, get_secret_repository
from secret_store.signals import secrets_pulled, secrets_pushed
from secret_store.snapshots import SnapshotManager
from secret_store.types import (
    IncomingSecret,
    PushResult,
    ReconcileResult,
    SecretRecord,
    SecretVersionRecord,
    SnapshotRecord,
)

logger = get_secrets_logger()


class SecretService:
    """Entry point for pushing, pulling and inspecting workspace secrets."""

    def __init__(self, repository: Optional[BaseSecretRepository] = None, *, serialize_writes: Optional[bool] = None):
        self.repository = repository or get_secret_repository()
        if serialize_writes is None:
            serialize_writes = bool(getattr(settings, 'SECRET_STORE_SERIALIZE_WRITES', True))
        self.serialize_writes = serialize_writes
        self.reconciler = SecretReconciler(self.repository)
        self.ledger = VersionLedger(self.repository)
        self.snapshots = SnapshotManager(self.repository)

    def _write_scope(self, workspace_id: str):
        # Without serialization concurrent pushes may lose updates and collide on snapshot versions
        if self.serialize_writes:
            return self.repository.locked_transaction(workspace_id)
        return self.repository.atomic()

    @staticmethod
    def _default_channel(channel: Optional[str]) -> str:
        return channel or getattr(settings, 'SECRET_STORE_DEFAULT_CHANNEL', 'cli')

    def push(
        self,
        user_id: Optional[int],
        workspace_id: str,
        environment: str,
        secrets: Iterable[IncomingSecret],
        *,
        channel: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> PushResult:
        """
        Make the stored secrets of the caller's scope match ``secrets``.

        Steps, all in one transaction:
        1. Reconcile the batch against shared + personal secrets of the scope
        2. Hard-delete missing secrets and flag their versions as deleted
        3. Update changed secrets and append their new versions
        4. Insert new secrets at version 1 and append their first versions
        5. Snapshot the workspace, even when nothing changed

        Raises:
            ReconciliationError: steps 1-4 failed
            SnapshotError: step 5 failed
        """
        batch = list(secrets)
        channel = self._default_channel(channel)

        try:
            with self._write_scope(workspace_id):
                diff = self.reconciler.reconcile(user_id, workspace_id, environment, batch)
                self._apply(user_id, workspace_id, environment, diff)
                snapshot = self.snapshots.take_snapshot(workspace_id)
        except SecretStoreError:
            metrics.observe_failure("push")
            raise
        except Exception as exc:
            metrics.observe_failure("push")
            logger.error(
                "Push transaction failed",
                extra_data={"workspace_id": str(workspace_id), "environment": environment, "error": str(exc)},
            )
            raise ReconciliationError("Failed to push shared and personal secrets") from exc

        result = PushResult(
            added=len(diff.to_add),
            updated=len(diff.to_update),
            deleted=len(diff.to_delete),
            unchanged=len(diff.unchanged),
            snapshot_version=snapshot.version,
        )
        secrets_pushed.send(
            sender=self.__class__,
            workspace_id=workspace_id,
            environment=environment,
            user_id=user_id,
            channel=channel,
            ip_address=ip_address,
            secret_count=len(batch),
            result=result,
        )
        return result

    def _apply(self, user_id: Optional[int], workspace_id: str, environment: str, diff: ReconcileResult) -> None:
        try:
            if diff.to_delete:
                deleted_ids = [secret.id for secret in diff.to_delete]
                self.repository.delete_secrets(deleted_ids)
                self.ledger.mark_deleted(deleted_ids)

            if diff.to_update:
                revised = [update.current.revise(user_id, update.incoming) for update in diff.to_update]
                self.repository.update_secrets(revised)
                self.ledger.append_versions([SecretVersionRecord.of(secret) for secret in revised])

            if diff.to_add:
                created = self.repository.insert_secrets([
                    SecretRecord.create(str(workspace_id), environment, user_id, entry) for entry in diff.to_add
                ])
                self.ledger.append_versions([SecretVersionRecord.of(secret) for secret in created])
        except Exception as exc:
            logger.error(
                "Failed to apply secret changes",
                extra_data={"workspace_id": str(workspace_id), "environment": environment, "error": str(exc)},
            )
            raise ReconciliationError("Failed to push shared and personal secrets") from exc

    def pull(
        self,
        user_id: Optional[int],
        workspace_id: str,
        environment: str,
        *,
        channel: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> List[SecretRecord]:
        """Personal secrets owned by ``user_id`` followed by the shared secrets of the scope."""
        try:
            secrets = self.repository.find_visible_secrets(user_id, workspace_id, environment)
        except Exception as exc:
            metrics.observe_failure("pull")
            logger.error(
                "Failed to pull secrets",
                extra_data={"workspace_id": str(workspace_id), "environment": environment, "error": str(exc)},
            )
            raise PullError("Failed to pull shared and personal secrets") from exc

        secrets_pulled.send(
            sender=self.__class__,
            workspace_id=workspace_id,
            environment=environment,
            user_id=user_id,
            channel=self._default_channel(channel),
            ip_address=ip_address,
            secret_count=len(secrets),
        )
        return secrets

    @staticmethod
    def reformat(secrets: List[SecretRecord]) -> List[dict]:
        return reformat_secrets(secrets)

    @staticmethod
    def decrypt(secrets, key, format=SecretFormat.TEXT):
        return decrypt_secrets(secrets, key, format)

    def take_snapshot(self, workspace_id: str) -> SnapshotRecord:
        """Snapshot the workspace outside of a push."""
        try:
            with self._write_scope(workspace_id):
                snapshot = self.snapshots.take_snapshot(workspace_id)
        except SnapshotError:
            raise
        except Exception as exc:
            raise SnapshotError("Failed to take a secret snapshot") from exc
        metrics.observe_snapshot()
        return snapshot

    def secret_history(self, secret_id: str) -> List[SecretVersionRecord]:
        return self.ledger.history(secret_id)

    def list_snapshots(self, workspace_id: str) -> List[SnapshotRecord]:
        return self.snapshots.list(workspace_id)

    def get_snapshot(self, workspace_id: str, version: Optional[int] = None) -> Optional[SnapshotRecord]:
        """Snapshot ``version`` of the workspace, or the latest one."""
        if version is None:
            return self.snapshots.latest(workspace_id)
        return self.snapshots.get(workspace_id, version)
