"""Value objects exchanged between the secret store engine and its repository."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from django.db import models


class SecretType(models.TextChoices):
    SHARED = 'shared', 'Shared'
    PERSONAL = 'personal', 'Personal'


@dataclass(frozen=True)
class EncryptedMaterial:
    """Ciphertext, IV and authentication tag of one field, plus its content hash."""

    ciphertext: str
    iv: str
    tag: str
    hash: str

    def as_fields(self, prefix: str) -> Dict[str, str]:
        """Flatten into ``{prefix}_ciphertext``-style column names."""
        return {
            f'{prefix}_ciphertext': self.ciphertext,
            f'{prefix}_iv': self.iv,
            f'{prefix}_tag': self.tag,
            f'{prefix}_hash': self.hash,
        }

    @classmethod
    def from_fields(cls, source: Any, prefix: str) -> 'EncryptedMaterial':
        """Build from a mapping or an object exposing ``{prefix}_*`` attributes."""
        if isinstance(source, dict):
            get = source.get
        else:
            def get(name, default=''):
                return getattr(source, name, default)
        return cls(
            ciphertext=get(f'{prefix}_ciphertext', '') or '',
            iv=get(f'{prefix}_iv', '') or '',
            tag=get(f'{prefix}_tag', '') or '',
            hash=get(f'{prefix}_hash', '') or '',
        )


EMPTY_MATERIAL = EncryptedMaterial(ciphertext='', iv='', tag='', hash='')


@dataclass(frozen=True)
class IncomingSecret:
    """One entry of a client push batch."""

    type: str
    key: EncryptedMaterial
    value: EncryptedMaterial
    comment: EncryptedMaterial = EMPTY_MATERIAL

    @property
    def key_hash(self) -> str:
        return self.key.hash

    @property
    def value_hash(self) -> str:
        return self.value.hash


@dataclass(frozen=True)
class SecretRecord:
    """Stored state of a secret. ``id`` is ``None`` until the repository inserts it."""

    id: Optional[str]
    workspace_id: str
    environment: str
    type: str
    user_id: Optional[int]
    key: EncryptedMaterial
    value: EncryptedMaterial
    comment: EncryptedMaterial = EMPTY_MATERIAL
    version: int = 1

    @property
    def key_hash(self) -> str:
        return self.key.hash

    @property
    def value_hash(self) -> str:
        return self.value.hash

    @classmethod
    def create(cls, workspace_id: str, environment: str, user_id: Optional[int],
               incoming: IncomingSecret) -> 'SecretRecord':
        """New secret at version 1; the owner is only kept for personal secrets."""
        return cls(
            id=None,
            workspace_id=workspace_id,
            environment=environment,
            type=incoming.type,
            user_id=user_id if incoming.type == SecretType.PERSONAL else None,
            key=incoming.key,
            value=incoming.value,
            comment=incoming.comment,
            version=1,
        )

    def revise(self, user_id: Optional[int], incoming: IncomingSecret) -> 'SecretRecord':
        """Next version carrying the incoming value, comment and type."""
        return replace(
            self,
            type=incoming.type,
            user_id=user_id if incoming.type == SecretType.PERSONAL else None,
            value=incoming.value,
            comment=incoming.comment,
            version=self.version + 1,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'workspace': self.workspace_id,
            'environment': self.environment,
            'type': self.type,
            'user': self.user_id,
            'version': self.version,
        }
        data.update(self.key.as_fields('secret_key'))
        data.update(self.value.as_fields('secret_value'))
        data.update(self.comment.as_fields('secret_comment'))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SecretRecord':
        return cls(
            id=data.get('id'),
            workspace_id=data['workspace'],
            environment=data['environment'],
            type=data['type'],
            user_id=data.get('user'),
            key=EncryptedMaterial.from_fields(data, 'secret_key'),
            value=EncryptedMaterial.from_fields(data, 'secret_value'),
            comment=EncryptedMaterial.from_fields(data, 'secret_comment'),
            version=int(data.get('version', 1)),
        )


@dataclass(frozen=True)
class SecretVersionRecord:
    """Immutable copy of a secret's encrypted state at one version."""

    secret_id: str
    workspace_id: str
    version: int
    key: EncryptedMaterial
    value: EncryptedMaterial
    comment: EncryptedMaterial = EMPTY_MATERIAL
    is_deleted: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def of(cls, secret: SecretRecord) -> 'SecretVersionRecord':
        if secret.id is None:
            raise ValueError('Cannot version a secret that has not been stored')
        return cls(
            secret_id=secret.id,
            workspace_id=secret.workspace_id,
            version=secret.version,
            key=secret.key,
            value=secret.value,
            comment=secret.comment,
        )


@dataclass(frozen=True)
class SnapshotRecord:
    """Point-in-time copy of every secret in a workspace."""

    workspace_id: str
    version: int
    secrets: Tuple[SecretRecord, ...] = ()
    created_at: Optional[datetime] = None

    def secrets_as_dicts(self) -> List[Dict[str, Any]]:
        return [secret.to_dict() for secret in self.secrets]


@dataclass(frozen=True)
class SecretUpdate:
    """A stored secret paired with the incoming entry that supersedes it."""

    current: SecretRecord
    incoming: IncomingSecret


@dataclass(frozen=True)
class ReconcileResult:
    to_delete: List[SecretRecord] = field(default_factory=list)
    to_update: List[SecretUpdate] = field(default_factory=list)
    to_add: List[IncomingSecret] = field(default_factory=list)
    unchanged: List[SecretRecord] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_delete or self.to_update or self.to_add)


@dataclass(frozen=True)
class PushResult:
    added: int
    updated: int
    deleted: int
    unchanged: int
    snapshot_version: int
