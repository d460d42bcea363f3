import logging
import threading
import uuid
from ipaddress import ip_address, ip_network

from django.conf import settings

# Thread-local storage for request data
_request_data = threading.local()

_CONTEXT_ATTRIBUTES = ('user_id', 'user_email', 'ip_address', 'path', 'method', 'request_id')


def _normalize_ip(candidate):
    """Return a cleaned IP address string or ``None`` if invalid."""
    if not candidate:
        return None

    value = candidate.strip().strip('"')

    # [v6]:port
    if value.startswith('[') and ']' in value:
        value = value[value.index('[') + 1:value.index(']')]

    if value.startswith('::ffff:'):
        value = value.split('::ffff:')[-1]

    # host:port for IPv4
    if value.count(':') == 1 and '.' in value:
        value, _, _ = value.partition(':')

    try:
        return str(ip_address(value))
    except ValueError:
        return None


def _remote_addr_is_trusted(meta):
    remote_addr = _normalize_ip((meta or {}).get('REMOTE_ADDR'))
    if not remote_addr:
        return False
    candidate = ip_address(remote_addr)
    for network in getattr(settings, 'TRUSTED_PROXY_IPS', ()):
        try:
            if candidate in ip_network(network, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request):
    """Return the client IP, honouring X-Forwarded-For only behind a trusted proxy."""
    meta = getattr(request, 'META', {}) or {}

    if _remote_addr_is_trusted(meta):
        for part in (meta.get('HTTP_X_FORWARDED_FOR') or '').split(','):
            cleaned = _normalize_ip(part)
            if cleaned:
                return cleaned
        cleaned = _normalize_ip(meta.get('HTTP_X_REAL_IP'))
        if cleaned:
            return cleaned

    return _normalize_ip(meta.get('REMOTE_ADDR')) or 'unknown'


def get_request_context():
    """Return a copy of the context recorded for the current request."""
    return {
        attribute: getattr(_request_data, attribute)
        for attribute in _CONTEXT_ATTRIBUTES
        if hasattr(_request_data, attribute)
    }


class UserIdFilter(logging.Filter):
    """
    Custom logging filter to add user information and IP address to log records.
    """

    def filter(self, record):
        record.user_id = getattr(_request_data, 'user_id', None) or 'anonymous'
        record.user_email = getattr(_request_data, 'user_email', None) or 'anonymous'
        record.ip = getattr(_request_data, 'ip_address', None) or 'unknown'
        for attribute, record_name in (('path', 'path'), ('method', 'http_method'), ('request_id', 'request_id')):
            value = getattr(_request_data, attribute, None)
            if value:
                setattr(record, record_name, value)
        return True


class LoggingMiddleware:
    """Middleware to capture user information and IP address for logging."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        user = getattr(request, 'user', None)
        if getattr(user, 'is_authenticated', False):
            _request_data.user_id = str(getattr(user, 'id', getattr(user, 'pk', 'anonymous')))
            _request_data.user_email = getattr(user, 'email', None)
        else:
            _request_data.user_id = 'anonymous'
            _request_data.user_email = None

        request_id = request.META.get('HTTP_X_REQUEST_ID') or uuid.uuid4().hex
        request.request_id = request_id
        _request_data.request_id = request_id
        _request_data.ip_address = get_client_ip(request)
        _request_data.path = request.path
        _request_data.method = request.method

        try:
            response = self.get_response(request)
        finally:
            # Clean up thread-local data to avoid leaking between requests
            for attribute in _CONTEXT_ATTRIBUTES:
                if hasattr(_request_data, attribute):
                    delattr(_request_data, attribute)

        response['X-Request-ID'] = request_id
        return response
