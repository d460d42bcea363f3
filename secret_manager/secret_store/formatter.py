"""Shape pulled secrets for clients that do not speak the raw record format."""

from __future__ import annotations

from dataclasses import asdict
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence, Tuple, Union

from core.logging_utils import get_secrets_logger
from secret_store.crypto_utils import decrypt_symmetric
from secret_store.exceptions import CryptoError, DecryptError, ReformatError
from secret_store.types import IncomingSecret, SecretRecord

logger = get_secrets_logger()

EncryptedSecret = Union[SecretRecord, IncomingSecret]
DecryptedEntry = Tuple[EncryptedSecret, str, str]


class SecretFormat(str, Enum):
    TEXT = 'text'
    OBJECT = 'object'
    EXPANDED = 'expanded'


def _material_dict(workspace_id: str, material) -> Dict[str, str]:
    return {
        'workspace': workspace_id,
        'ciphertext': material.ciphertext,
        'iv': material.iv,
        'tag': material.tag,
        'hash': material.hash,
    }


def reformat_secrets(secrets: Sequence[SecretRecord]) -> List[Dict[str, Any]]:
    """Split each record's key and value material into labelled sub-objects."""

    try:
        return [
            {
                'id': secret.id,
                'workspace': secret.workspace_id,
                'type': secret.type,
                'environment': secret.environment,
                'secret_key': _material_dict(secret.workspace_id, secret.key),
                'secret_value': _material_dict(secret.workspace_id, secret.value),
            }
            for secret in secrets
        ]
    except Exception as exc:
        logger.error("Failed to reformat pulled secrets", extra_data={"error": str(exc)})
        raise ReformatError("Failed to reformat pulled secrets") from exc


def _render_text(entries: Sequence[DecryptedEntry]) -> str:
    return "\n".join(f"{key}={value}" for _, key, value in entries)


def _render_object(entries: Sequence[DecryptedEntry]) -> Dict[str, str]:
    return {key: value for _, key, value in entries}


def _render_expanded(entries: Sequence[DecryptedEntry]) -> Dict[str, Dict[str, Any]]:
    content: Dict[str, Dict[str, Any]] = {}
    for secret, key, value in entries:
        content[key] = {
            **asdict(secret),
            'plaintext_key': key,
            'plaintext_value': value,
        }
    return content


_RENDERERS: Dict[SecretFormat, Callable[[Sequence[DecryptedEntry]], Any]] = {
    SecretFormat.TEXT: _render_text,
    SecretFormat.OBJECT: _render_object,
    SecretFormat.EXPANDED: _render_expanded,
}


def decrypt_secrets(
    secrets: Sequence[EncryptedSecret],
    key: Union[str, bytes],
    format: Union[SecretFormat, str] = SecretFormat.TEXT,
) -> Union[str, Dict[str, Any]]:
    """Decrypt every secret with the workspace ``key`` and render it as ``format``.

    ``text`` gives ``KEY=value`` lines in input order, ``object`` maps keys to
    values (a repeated key keeps the later value) and ``expanded`` maps keys to
    the encrypted record plus ``plaintext_key``/``plaintext_value``.
    """

    try:
        renderer = _RENDERERS[SecretFormat(format)]
    except ValueError as exc:
        raise DecryptError(f"Unsupported secret format: {format!r}") from exc

    entries: List[DecryptedEntry] = []
    for index, secret in enumerate(secrets):
        try:
            plaintext_key = decrypt_symmetric(secret.key.ciphertext, secret.key.iv, secret.key.tag, key)
            plaintext_value = decrypt_symmetric(secret.value.ciphertext, secret.value.iv, secret.value.tag, key)
        except CryptoError as exc:
            logger.encryption_event(f"secret decryption failed at position {index}: {exc}", success=False)
            raise DecryptError("Failed to decrypt secrets") from exc
        entries.append((secret, plaintext_key, plaintext_value))

    return renderer(entries)
