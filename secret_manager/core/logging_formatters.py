"""JSON log output for the secret store.

Each record becomes one JSON object with up to three nested sections:

* ``request``: who made the call and how, stamped by ``UserIdFilter``.
* ``scope``: the workspace and environment a ``scope_event`` acted on.
* ``context``: everything else passed as ``extra_data``.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# (record attribute, key under "request")
REQUEST_FIELDS = (
    ("request_id", "id"),
    ("user_id", "user_id"),
    ("user_email", "user_email"),
    ("ip", "ip"),
    ("http_method", "method"),
    ("path", "path"),
)

SCOPE_FIELDS = ("workspace_id", "environment")

_ANONYMOUS = (None, "", "anonymous", "unknown")


def _request_section(record: logging.LogRecord) -> Dict[str, Any]:
    section = {}
    for attribute, key in REQUEST_FIELDS:
        value = getattr(record, attribute, None)
        if value not in _ANONYMOUS:
            section[key] = value
    return section


def _split_context(context: Optional[Dict[str, Any]]):
    """Separate workspace scope keys from the rest of a record's context."""
    if not isinstance(context, dict):
        return {}, {}
    remaining = dict(context)
    scope = {key: remaining.pop(key) for key in SCOPE_FIELDS if key in remaining}
    return scope, remaining


class StructuredJSONFormatter(logging.Formatter):
    """Format log records as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "source": f"{record.module}:{record.lineno}",
            "message": record.getMessage(),
        }

        request = _request_section(record)
        if request:
            payload["request"] = request

        scope, context = _split_context(getattr(record, "context", None))
        if scope:
            payload["scope"] = scope
        if context:
            payload["context"] = context

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)
