"""
Telemetry signals sent after successful pushes and pulls, with logging receivers.
"""

from django.dispatch import Signal, receiver

from core.logging_utils import get_secrets_logger
from secret_store import metrics

logger = get_secrets_logger()

# kwargs: workspace_id, environment, user_id, channel, ip_address, secret_count, result
secrets_pushed = Signal()

# kwargs: workspace_id, environment, user_id, channel, ip_address, secret_count
secrets_pulled = Signal()


@receiver(secrets_pushed)
def log_secrets_pushed(sender, workspace_id, environment, channel, secret_count, result, **kwargs):
    """Log and count a completed push"""
    metrics.observe_push(result, channel, secret_count)
    logger.scope_event("pushed", workspace_id, environment, extra_data={
        "user_id": kwargs.get("user_id"),
        "channel": channel,
        "ip": kwargs.get("ip_address") or "unknown",
        "number_of_secrets": secret_count,
        "added": result.added,
        "updated": result.updated,
        "deleted": result.deleted,
        "snapshot_version": result.snapshot_version,
    })


@receiver(secrets_pulled)
def log_secrets_pulled(sender, workspace_id, environment, channel, secret_count, **kwargs):
    """Log and count a completed pull"""
    metrics.observe_pull(channel, secret_count)
    logger.scope_event("pulled", workspace_id, environment, extra_data={
        "user_id": kwargs.get("user_id"),
        "channel": channel,
        "ip": kwargs.get("ip_address") or "unknown",
        "number_of_secrets": secret_count,
    })
