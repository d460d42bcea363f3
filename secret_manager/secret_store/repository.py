"""Storage abstraction for secrets, their version history and snapshots.

The engine only talks to :class:`BaseSecretRepository`. The Django backend is
used in deployments; the in-memory backend backs tests and local tooling.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import transaction
from django.utils import timezone

from core.logging_utils import get_secrets_logger
from secret_store.locks import KeyedLock, get_workspace_locks
from secret_store.models import Secret, SecretSnapshot, SecretVersion, Workspace
from secret_store.types import (
    EncryptedMaterial,
    SecretRecord,
    SecretType,
    SecretVersionRecord,
    SnapshotRecord,
)

logger = get_secrets_logger()


class BaseSecretRepository:
    """Interface for secret storage backends."""

    def __init__(self, *, locks: Optional[KeyedLock] = None):
        self._locks = locks or get_workspace_locks()

    # Transactions

    def atomic(self):  # pragma: no cover - abstract
        """Context manager; every write inside commits or rolls back together."""
        raise NotImplementedError

    @contextmanager
    def locked_transaction(self, workspace_id: str) -> Iterator[None]:
        """Transaction holding exclusive access to ``workspace_id``."""
        with self._locks.hold(workspace_id):
            with self.atomic():
                self._lock_workspace_rows(workspace_id)
                yield

    def _lock_workspace_rows(self, workspace_id: str) -> None:
        """Hook for backends that can also lock across processes."""

    # Secrets

    def find_secrets(
        self,
        workspace_id: str,
        *,
        environment: Optional[str] = None,
        type: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> List[SecretRecord]:  # pragma: no cover - abstract
        raise NotImplementedError

    def find_visible_secrets(self, user_id: Optional[int], workspace_id: str, environment: str) -> List[SecretRecord]:
        """Personal secrets owned by ``user_id`` followed by shared secrets."""
        personal = self.find_secrets(
            workspace_id, environment=environment, type=SecretType.PERSONAL, user_id=user_id
        ) if user_id is not None else []
        shared = self.find_secrets(workspace_id, environment=environment, type=SecretType.SHARED)
        return personal + shared

    def insert_secrets(self, secrets: Sequence[SecretRecord]) -> List[SecretRecord]:  # pragma: no cover - abstract
        """Store new secrets and return them with their assigned ids."""
        raise NotImplementedError

    def update_secrets(self, secrets: Sequence[SecretRecord]) -> None:  # pragma: no cover - abstract
        """Overwrite type, owner, value, comment and version of existing secrets."""
        raise NotImplementedError

    def delete_secrets(self, secret_ids: Sequence[str]) -> int:  # pragma: no cover - abstract
        raise NotImplementedError

    # Versions

    def insert_versions(self, versions: Sequence[SecretVersionRecord]) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def mark_versions_deleted(self, secret_ids: Sequence[str]) -> int:  # pragma: no cover - abstract
        raise NotImplementedError

    def find_versions(self, secret_id: str) -> List[SecretVersionRecord]:  # pragma: no cover - abstract
        raise NotImplementedError

    # Snapshots

    def latest_snapshot(self, workspace_id: str) -> Optional[SnapshotRecord]:  # pragma: no cover - abstract
        raise NotImplementedError

    def get_snapshot(self, workspace_id: str, version: int) -> Optional[SnapshotRecord]:  # pragma: no cover - abstract
        raise NotImplementedError

    def find_snapshots(self, workspace_id: str) -> List[SnapshotRecord]:  # pragma: no cover - abstract
        """All snapshots of the workspace, newest first."""
        raise NotImplementedError

    def insert_snapshot(self, snapshot: SnapshotRecord) -> SnapshotRecord:  # pragma: no cover - abstract
        raise NotImplementedError


def _secret_to_record(secret) -> SecretRecord:
    return SecretRecord(
        id=str(secret.id),
        workspace_id=str(secret.workspace_id),
        environment=secret.environment,
        type=secret.type,
        user_id=secret.user_id,
        key=EncryptedMaterial.from_fields(secret, 'secret_key'),
        value=EncryptedMaterial.from_fields(secret, 'secret_value'),
        comment=EncryptedMaterial.from_fields(secret, 'secret_comment'),
        version=secret.version,
    )


def _version_to_record(row) -> SecretVersionRecord:
    return SecretVersionRecord(
        secret_id=str(row.secret_id),
        workspace_id=str(row.workspace_id),
        version=row.version,
        key=EncryptedMaterial.from_fields(row, 'secret_key'),
        value=EncryptedMaterial.from_fields(row, 'secret_value'),
        comment=EncryptedMaterial.from_fields(row, 'secret_comment'),
        is_deleted=row.is_deleted,
        created_at=row.created_at,
    )


def _snapshot_to_record(row) -> SnapshotRecord:
    return SnapshotRecord(
        workspace_id=str(row.workspace_id),
        version=row.version,
        secrets=tuple(SecretRecord.from_dict(item) for item in row.secrets),
        created_at=row.created_at,
    )


def _material_columns(record) -> Dict[str, str]:
    columns: Dict[str, str] = {}
    columns.update(record.key.as_fields('secret_key'))
    columns.update(record.value.as_fields('secret_value'))
    columns.update(record.comment.as_fields('secret_comment'))
    return columns


class DjangoSecretRepository(BaseSecretRepository):
    """Repository backed by the Django ORM."""

    _UPDATE_FIELDS = [
        'type',
        'user',
        'version',
        'secret_value_ciphertext',
        'secret_value_iv',
        'secret_value_tag',
        'secret_value_hash',
        'secret_comment_ciphertext',
        'secret_comment_iv',
        'secret_comment_tag',
        'secret_comment_hash',
        'updated_at',
    ]

    def atomic(self):
        return transaction.atomic()

    def _lock_workspace_rows(self, workspace_id: str) -> None:
        # Blocks concurrent writers in other processes on backends with row locks
        list(Workspace.objects.select_for_update().filter(pk=workspace_id).values_list('pk', flat=True))

    def find_secrets(self, workspace_id, *, environment=None, type=None, user_id=None):
        queryset = Secret.objects.filter(workspace_id=workspace_id)
        if environment is not None:
            queryset = queryset.filter(environment=environment)
        if type is not None:
            queryset = queryset.filter(type=type)
        if user_id is not None:
            queryset = queryset.filter(user_id=user_id)
        return [_secret_to_record(secret) for secret in queryset]

    def insert_secrets(self, secrets):
        rows = [
            Secret(
                workspace_id=record.workspace_id,
                environment=record.environment,
                type=record.type,
                user_id=record.user_id,
                version=record.version,
                **_material_columns(record),
            )
            for record in secrets
        ]
        created = Secret.objects.bulk_create(rows)
        return [_secret_to_record(row) for row in created]

    def update_secrets(self, secrets):
        if not secrets:
            return
        rows = Secret.objects.in_bulk([record.id for record in secrets])
        now = timezone.now()
        changed = []
        for record in secrets:
            row = rows.get(uuid.UUID(str(record.id)))
            if row is None:
                raise Secret.DoesNotExist(f"Secret {record.id} disappeared during update")
            row.type = record.type
            row.user_id = record.user_id
            row.version = record.version
            for column, value in _material_columns(record).items():
                if not column.startswith('secret_key_'):
                    setattr(row, column, value)
            row.updated_at = now
            changed.append(row)
        Secret.objects.bulk_update(changed, self._UPDATE_FIELDS)

    def delete_secrets(self, secret_ids):
        if not secret_ids:
            return 0
        deleted, _ = Secret.objects.filter(id__in=list(secret_ids)).delete()
        return deleted

    def insert_versions(self, versions):
        SecretVersion.objects.bulk_create([
            SecretVersion(
                secret_id=record.secret_id,
                workspace_id=record.workspace_id,
                version=record.version,
                is_deleted=record.is_deleted,
                **_material_columns(record),
            )
            for record in versions
        ])

    def mark_versions_deleted(self, secret_ids):
        if not secret_ids:
            return 0
        return SecretVersion.objects.filter(secret_id__in=list(secret_ids)).update(is_deleted=True)

    def find_versions(self, secret_id):
        rows = SecretVersion.objects.filter(secret_id=secret_id).order_by('version')
        return [_version_to_record(row) for row in rows]

    def latest_snapshot(self, workspace_id):
        row = SecretSnapshot.objects.filter(workspace_id=workspace_id).order_by('-version').first()
        return _snapshot_to_record(row) if row is not None else None

    def get_snapshot(self, workspace_id, version):
        row = SecretSnapshot.objects.filter(workspace_id=workspace_id, version=version).first()
        return _snapshot_to_record(row) if row is not None else None

    def find_snapshots(self, workspace_id):
        rows = SecretSnapshot.objects.filter(workspace_id=workspace_id).order_by('-version')
        return [_snapshot_to_record(row) for row in rows]

    def insert_snapshot(self, snapshot):
        row = SecretSnapshot.objects.create(
            workspace_id=snapshot.workspace_id,
            version=snapshot.version,
            secrets=snapshot.secrets_as_dicts(),
        )
        return _snapshot_to_record(row)


class InMemorySecretRepository(BaseSecretRepository):
    """Process-local repository for tests and tooling.

    ``atomic`` holds the repository mutex for the whole block, so blocks run one
    at a time and the state captured on entry is restored when the block raises.
    """

    def __init__(self, *, locks: Optional[KeyedLock] = None):
        super().__init__(locks=locks or KeyedLock())
        self._mutex = threading.RLock()
        self.secrets: Dict[str, SecretRecord] = {}
        self.versions: List[SecretVersionRecord] = []
        self.snapshots: List[SnapshotRecord] = []

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._mutex:
            saved = (dict(self.secrets), list(self.versions), list(self.snapshots))
            try:
                yield
            except BaseException:
                self.secrets, self.versions, self.snapshots = saved
                logger.warning("In-memory transaction rolled back")
                raise

    def find_secrets(self, workspace_id, *, environment=None, type=None, user_id=None):
        with self._mutex:
            records = list(self.secrets.values())
        return [
            record for record in records
            if record.workspace_id == str(workspace_id)
            and (environment is None or record.environment == environment)
            and (type is None or record.type == type)
            and (user_id is None or record.user_id == user_id)
        ]

    def insert_secrets(self, secrets):
        created = []
        with self._mutex:
            for record in secrets:
                stored = SecretRecord(
                    id=str(uuid.uuid4()),
                    workspace_id=str(record.workspace_id),
                    environment=record.environment,
                    type=record.type,
                    user_id=record.user_id,
                    key=record.key,
                    value=record.value,
                    comment=record.comment,
                    version=record.version,
                )
                self._check_unique(stored)
                self.secrets[stored.id] = stored
                created.append(stored)
        return created

    def _check_unique(self, candidate: SecretRecord) -> None:
        for existing in self.secrets.values():
            if existing.id == candidate.id:
                continue
            if (
                existing.workspace_id == candidate.workspace_id
                and existing.environment == candidate.environment
                and existing.type == candidate.type
                and existing.user_id == candidate.user_id
                and existing.key_hash == candidate.key_hash
            ):
                raise ValueError(f"Duplicate key hash {candidate.key_hash} in scope")

    def update_secrets(self, secrets):
        with self._mutex:
            for record in secrets:
                if record.id not in self.secrets:
                    raise KeyError(f"Secret {record.id} does not exist")
                self._check_unique(record)
                self.secrets[record.id] = record

    def delete_secrets(self, secret_ids):
        deleted = 0
        with self._mutex:
            for secret_id in secret_ids:
                if self.secrets.pop(secret_id, None) is not None:
                    deleted += 1
        return deleted

    def insert_versions(self, versions):
        with self._mutex:
            existing = {(v.secret_id, v.version) for v in self.versions}
            for record in versions:
                if (record.secret_id, record.version) in existing:
                    raise ValueError(f"Version {record.version} of {record.secret_id} already recorded")
                existing.add((record.secret_id, record.version))
                self.versions.append(record)

    def mark_versions_deleted(self, secret_ids):
        targets = set(secret_ids)
        flagged = 0
        with self._mutex:
            for index, record in enumerate(self.versions):
                if record.secret_id in targets:
                    self.versions[index] = SecretVersionRecord(
                        secret_id=record.secret_id,
                        workspace_id=record.workspace_id,
                        version=record.version,
                        key=record.key,
                        value=record.value,
                        comment=record.comment,
                        is_deleted=True,
                        created_at=record.created_at,
                    )
                    flagged += 1
        return flagged

    def find_versions(self, secret_id):
        with self._mutex:
            rows = [record for record in self.versions if record.secret_id == secret_id]
        return sorted(rows, key=lambda record: record.version)

    def latest_snapshot(self, workspace_id):
        snapshots = self.find_snapshots(workspace_id)
        return snapshots[0] if snapshots else None

    def get_snapshot(self, workspace_id, version):
        for snapshot in self.find_snapshots(workspace_id):
            if snapshot.version == version:
                return snapshot
        return None

    def find_snapshots(self, workspace_id):
        with self._mutex:
            rows = [s for s in self.snapshots if s.workspace_id == str(workspace_id)]
        return sorted(rows, key=lambda snapshot: snapshot.version, reverse=True)

    def insert_snapshot(self, snapshot):
        with self._mutex:
            if self.get_snapshot(snapshot.workspace_id, snapshot.version) is not None:
                raise ValueError(f"Snapshot version {snapshot.version} already exists")
            self.snapshots.append(snapshot)
        return snapshot


_repository_instance: Optional[BaseSecretRepository] = None
_repository_lock = threading.Lock()


def _build_repository() -> BaseSecretRepository:
    backend = getattr(settings, 'SECRET_STORE_REPOSITORY_BACKEND', 'django')
    if backend == 'django':
        return DjangoSecretRepository()
    if backend == 'memory':
        logger.warning("Using in-memory secret repository; data is lost on restart")
        return InMemorySecretRepository()
    raise ImproperlyConfigured(f"Unknown SECRET_STORE_REPOSITORY_BACKEND: {backend!r}")


def get_secret_repository() -> BaseSecretRepository:
    """Return a singleton repository for the configured backend."""

    global _repository_instance
    if _repository_instance is not None:
        return _repository_instance

    with _repository_lock:
        if _repository_instance is None:
            _repository_instance = _build_repository()
    return _repository_instance

