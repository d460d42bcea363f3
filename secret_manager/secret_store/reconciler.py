"""Diff a pushed batch of secrets against what is stored for the caller's scope."""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Sequence, Set, Tuple, TypeVar

from core.logging_utils import get_secrets_logger
from secret_store.exceptions import ReconciliationError
from secret_store.repository import BaseSecretRepository
from secret_store.types import IncomingSecret, ReconcileResult, SecretRecord, SecretType, SecretUpdate

logger = get_secrets_logger()

T = TypeVar('T', SecretRecord, IncomingSecret)

ScopeKey = Tuple[str, str]


def _other_type(secret_type: str) -> str:
    return SecretType.SHARED if secret_type == SecretType.PERSONAL else SecretType.PERSONAL


def index_by_type_and_hash(entries: Iterable[T]) -> Dict[ScopeKey, T]:
    """Map ``(type, key hash)`` to entry; a repeated pair keeps the last entry."""

    index: Dict[ScopeKey, T] = {}
    for entry in entries:
        index[(entry.type, entry.key_hash)] = entry
    return index


def diff_secrets(current: Sequence[SecretRecord], incoming: Sequence[IncomingSecret]) -> ReconcileResult:
    """Classify every stored and incoming secret as added, updated, deleted or unchanged.

    A personal and a shared secret may share a key hash, so entries are matched
    to the stored record of the same type. When only the other type is stored
    and the batch does not claim that record itself, a changed type is an update
    of that record, never a delete followed by an add.
    """

    old_index = index_by_type_and_hash(current)
    new_index = index_by_type_and_hash(incoming)

    matched: Set[ScopeKey] = set()
    to_update = []
    unchanged = []
    to_add = []

    for (secret_type, key_hash), entry in new_index.items():
        scope_key = (secret_type, key_hash)
        if scope_key not in old_index:
            flipped = (_other_type(secret_type), key_hash)
            if flipped in old_index and flipped not in new_index and flipped not in matched:
                scope_key = flipped
            else:
                to_add.append(entry)
                continue

        secret = old_index[scope_key]
        matched.add(scope_key)
        if entry.value_hash != secret.value_hash or entry.type != secret.type:
            to_update.append(SecretUpdate(current=secret, incoming=entry))
        else:
            unchanged.append(secret)

    to_delete = [secret for secret in current if (secret.type, secret.key_hash) not in matched]

    return ReconcileResult(
        to_delete=to_delete,
        to_update=to_update,
        to_add=to_add,
        unchanged=unchanged,
    )


class SecretReconciler:
    """Compute the diff for one (user, workspace, environment) scope."""

    def __init__(self, repository: BaseSecretRepository):
        self.repository = repository

    def reconcile(
        self,
        user_id: Optional[int],
        workspace_id: str,
        environment: str,
        incoming: Sequence[IncomingSecret],
    ) -> ReconcileResult:
        try:
            current = self.repository.find_visible_secrets(user_id, workspace_id, environment)
        except Exception as exc:
            logger.error(
                "Failed to load current secrets for reconciliation",
                extra_data={"workspace_id": str(workspace_id), "environment": environment, "error": str(exc)},
            )
            raise ReconciliationError("Failed to push shared and personal secrets") from exc

        result = diff_secrets(current, incoming)
        logger.debug(
            "Reconciled secret batch",
            extra_data={
                "workspace_id": str(workspace_id),
                "environment": environment,
                "to_add": len(result.to_add),
                "to_update": len(result.to_update),
                "to_delete": len(result.to_delete),
                "unchanged": len(result.unchanged),
            },
        )
        return result
