"""Prometheus metrics for secret push/pull activity.

Exposed on ``/metrics`` by django-prometheus together with its request and
database metrics.
"""

from prometheus_client import Counter

PUSH_COUNT = Counter(
    "secret_store_pushes_total",
    "Push operations by outcome",
    ["status"],
)

PULL_COUNT = Counter(
    "secret_store_pulls_total",
    "Pull operations by outcome",
    ["status"],
)

SECRETS_TRANSFERRED = Counter(
    "secret_store_secrets_transferred_total",
    "Secrets received by pushes or returned by pulls",
    ["direction", "channel"],
)

SECRET_CHANGES = Counter(
    "secret_store_secret_changes_total",
    "Secret rows written by pushes",
    ["change"],
)

SNAPSHOT_COUNT = Counter(
    "secret_store_snapshots_total",
    "Workspace snapshots written",
)


def observe_push(result, channel: str, batch_size: int) -> None:
    PUSH_COUNT.labels(status="success").inc()
    SECRETS_TRANSFERRED.labels(direction="push", channel=channel).inc(batch_size)
    SECRET_CHANGES.labels(change="added").inc(result.added)
    SECRET_CHANGES.labels(change="updated").inc(result.updated)
    SECRET_CHANGES.labels(change="deleted").inc(result.deleted)
    observe_snapshot()


def observe_snapshot() -> None:
    SNAPSHOT_COUNT.inc()


def observe_pull(channel: str, count: int) -> None:
    PULL_COUNT.labels(status="success").inc()
    SECRETS_TRANSFERRED.labels(direction="pull", channel=channel).inc(count)


def observe_failure(operation: str) -> None:
    counter = PUSH_COUNT if operation == "push" else PULL_COUNT
    counter.labels(status="failure").inc()
