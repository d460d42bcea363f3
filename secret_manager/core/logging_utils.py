"""
Centralized logging utilities for the secret manager application.
Every message carries the acting member and, for secret operations, the
workspace scope, both in the text and as a ``context`` dict for the JSON
formatter.
"""

import logging
from typing import Optional, Dict, Any, Tuple

LogContext = Optional[Dict[str, Any]]


class AppLogger:
    """Thin wrapper over a stdlib logger with member and scope aware helpers."""

    def __init__(self, logger_name: str):
        """
        Args:
            logger_name: Name of the configured logger (e.g. 'secret_store', 'core')
        """
        self.logger = logging.getLogger(logger_name)
        self.security_logger = logging.getLogger('django.security')
        self.alerts_logger = logging.getLogger('alerts')

    def debug(self, message: str, user: Optional[Any] = None, extra_data: LogContext = None):
        self._emit(self.logger, logging.DEBUG, message, user, extra_data)

    def info(self, message: str, user: Optional[Any] = None, extra_data: LogContext = None):
        self._emit(self.logger, logging.INFO, message, user, extra_data)

    def warning(self, message: str, user: Optional[Any] = None, extra_data: LogContext = None):
        self._emit(self.logger, logging.WARNING, message, user, extra_data)

    def error(self, message: str, user: Optional[Any] = None, extra_data: LogContext = None):
        self._emit(self.logger, logging.ERROR, message, user, extra_data)

    def critical(self, message: str, user: Optional[Any] = None, extra_data: LogContext = None):
        """Log at CRITICAL and raise an alert."""
        self._emit(self.logger, logging.CRITICAL, message, user, extra_data)
        self._emit(self.alerts_logger, logging.ERROR, f"CRITICAL: {message}", None, extra_data, decorate=False)

    def security_event(self, message: str, user: Optional[Any] = None, extra_data: LogContext = None):
        """Access control decisions go to the security log."""
        self._emit(self.security_logger, logging.WARNING, f"SECURITY EVENT: {message}", user, extra_data)

    def scope_event(
        self,
        action: str,
        workspace_id: Any,
        environment: Optional[str] = None,
        *,
        user: Optional[Any] = None,
        extra_data: LogContext = None,
    ):
        """Log an operation against a workspace (and optionally one environment)."""
        scope: Dict[str, Any] = {'workspace_id': str(workspace_id)}
        if environment is not None:
            scope['environment'] = environment
        if extra_data:
            scope.update(extra_data)
        self.info(f"SECRETS {action}", user, scope)

    def encryption_event(self, event: str, user: Optional[Any] = None, success: bool = True):
        status = "SUCCESS" if success else "FAILURE"
        level = logging.INFO if success else logging.ERROR
        self._emit(self.logger, level, f"ENCRYPTION {status}: {event}", user, None)

    def _emit(self, target: logging.Logger, level: int, message: str, user: Optional[Any],
              extra_data: LogContext, decorate: bool = True):
        text, context = self._prepare(message, user, extra_data, decorate)
        if context:
            target.log(level, text, extra={'context': context})
        else:
            target.log(level, text)

    @staticmethod
    def _prepare(message: str, user: Optional[Any], extra_data: LogContext, decorate: bool) -> Tuple[str, Dict[str, Any]]:
        context: Dict[str, Any] = {}
        text = message
        if user is not None:
            email = getattr(user, 'email', None)
            member_pk = getattr(user, 'pk', getattr(user, 'id', None))
            context['user_email'] = email
            if member_pk is not None:
                context['user_pk'] = member_pk
            if decorate:
                text = f"[User: {email or 'unknown'}] {text}"
        if extra_data:
            context.update(extra_data)
            if decorate:
                text += " | Extra: " + ", ".join(f"{k}: {v}" for k, v in extra_data.items())
        return text, context


def get_secrets_logger():
    """Logger for the secret store app."""
    return AppLogger('secret_store')


def get_security_logger():
    """Logger for crypto and access control events."""
    return AppLogger('django.security')
