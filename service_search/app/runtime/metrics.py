"""Metrics collection facade for the search service.

Re-exports shared metrics helpers so callers can import from a consistent
local path within the service.
"""

from libs.common.metrics import LATENCY_CLASSES, MetricsCollector, get_metrics_collector

SERVICE_NAME = "search-service"


def get_service_metrics() -> MetricsCollector:
    """Return the process-wide collector for the search service."""
    return get_metrics_collector(SERVICE_NAME)


__all__ = ["LATENCY_CLASSES", "MetricsCollector", "SERVICE_NAME", "get_service_metrics"]
