"""inboxsync observability package: in-process metrics."""

from inboxsync.observability.metrics import MetricsCollector, get_metrics

__all__ = ["MetricsCollector", "get_metrics"]
