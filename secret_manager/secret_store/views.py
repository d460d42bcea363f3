import json

from django.http import JsonResponse
from django.views.decorators.http import require_http_methods

from .exceptions import SecretStoreError
from .models import Environment
from .service import SecretService
from .types import EncryptedMaterial, IncomingSecret, SecretType
from core.logging_utils import get_secrets_logger
from core.middleware import get_client_ip

# Get centralized logger
logger = get_secrets_logger()

_MATERIAL_SUFFIXES = {
    'ciphertext': 'Ciphertext',
    'iv': 'IV',
    'tag': 'Tag',
    'hash': 'Hash',
}


class PayloadError(ValueError):
    """Raised when a push body cannot be mapped onto secrets."""


def _material(entry, prefix, required=True):
    values = {}
    for field, suffix in _MATERIAL_SUFFIXES.items():
        value = entry.get(f'{prefix}{suffix}', '')
        if value is None:
            value = ''
        if not isinstance(value, str):
            raise PayloadError(f'{prefix}{suffix} must be a string')
        if required and field != 'ciphertext' and not value:
            raise PayloadError(f'{prefix}{suffix} is required')
        values[field] = value
    return EncryptedMaterial(**values)


def parse_push_payload(data):
    """Map the ``secrets`` list of a push body onto IncomingSecret values."""
    if not isinstance(data, dict):
        raise PayloadError('Request body must be a JSON object')

    entries = data.get('secrets')
    if not isinstance(entries, list):
        raise PayloadError('secrets must be a list')

    secrets = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise PayloadError(f'secrets[{position}] must be an object')
        secret_type = entry.get('type')
        if secret_type not in SecretType.values:
            raise PayloadError(f'secrets[{position}].type must be one of {", ".join(SecretType.values)}')
        try:
            secrets.append(IncomingSecret(
                type=secret_type,
                key=_material(entry, 'secretKey'),
                value=_material(entry, 'secretValue'),
                comment=_material(entry, 'secretComment', required=False),
            ))
        except PayloadError as exc:
            raise PayloadError(f'secrets[{position}]: {exc}') from exc
    return secrets


def sanitize_batch(secrets):
    """Drop entries whose key or value ciphertext is empty."""
    return [s for s in secrets if s.key.ciphertext != '' and s.value.ciphertext != '']


def _error(message, status):
    return JsonResponse({'message': message}, status=status)


def _validate_environment(workspace_id, environment):
    return bool(environment) and Environment.objects.filter(workspace_id=workspace_id, slug=environment).exists()


def _handle_push(request, workspace_id):
    try:
        data = json.loads(request.body or b'{}')
        secrets = parse_push_payload(data)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("Rejected malformed push payload", request.user, extra_data={"error": str(e)})
        return _error(str(e) if isinstance(e, PayloadError) else 'Request body must be valid JSON', 400)

    environment = data.get('environment')
    if not _validate_environment(workspace_id, environment):
        return _error('Failed to validate environment', 400)

    secrets = sanitize_batch(secrets)
    try:
        result = SecretService().push(
            request.user.pk,
            str(workspace_id),
            environment,
            secrets,
            channel=data.get('channel') or None,
            ip_address=get_client_ip(request),
        )
    except SecretStoreError as e:
        logger.error("Secret push failed", request.user, extra_data={"workspace_id": str(workspace_id), "error": str(e)})
        return _error(str(e), 500)

    return JsonResponse({
        'message': 'Successfully uploaded workspace secrets',
        'added': result.added,
        'updated': result.updated,
        'deleted': result.deleted,
        'unchanged': result.unchanged,
        'snapshotVersion': result.snapshot_version,
    })


def _handle_pull(request, workspace_id):
    environment = request.GET.get('environment')
    if not _validate_environment(workspace_id, environment):
        return _error('Failed to validate environment', 400)

    channel = request.GET.get('channel') or 'cli'
    service = SecretService()
    try:
        secrets = service.pull(
            request.user.pk,
            str(workspace_id),
            environment,
            channel=channel,
            ip_address=get_client_ip(request),
        )
        if channel != 'cli':
            payload = service.reformat(secrets)
        else:
            payload = [secret.to_dict() for secret in secrets]
    except SecretStoreError as e:
        logger.error("Secret pull failed", request.user, extra_data={"workspace_id": str(workspace_id), "error": str(e)})
        return _error(str(e), 500)

    response = JsonResponse({'secrets': payload})
    response['Cache-Control'] = 'no-store, private'
    response['Pragma'] = 'no-cache'
    return response


@require_http_methods(['GET', 'POST'])
def workspace_secrets(request, workspace_id):
    if not request.user.is_authenticated:
        logger.warning(f"Unauthenticated secret access attempt from IP: {get_client_ip(request)}")
        return _error('Authentication required', 401)

    if not request.user.is_member_of(workspace_id):
        logger.security_event(
            "Secret access attempt by non-member",
            request.user,
            extra_data={"workspace_id": str(workspace_id), "method": request.method},
        )
        return _error('You are not a member of this workspace', 403)

    handlers = {
        'POST': _handle_push,
        'GET': _handle_pull,
    }
    return handlers[request.method](request, workspace_id)
