"""Metrics collection for the retrieval engine.

Provides a thin convenience wrapper around ``prometheus_client`` so the search
service and the drift monitor consistently record query volume, per-class
latency, cache behaviour, blend weight, and drift-cycle outcomes.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected for tests)
"""

from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")

LATENCY_CLASSES = ("cached", "uncached", "error")


class MetricsCollector:
    """Centralized metrics collection for retrieval components.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)

    Exposes typed helpers for common events to keep label sets consistent.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # HTTP
        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        # Search
        self.search_queries = Counter(
            'retrieval_search_queries_total',
            'Total hybrid search queries',
            ['type'],
            registry=self.registry
        )

        self.search_latency = Histogram(
            'retrieval_search_latency_seconds',
            'Hybrid search latency by class (cached, uncached, error)',
            ['latency_class'],
            registry=self.registry
        )

        # Result cache
        self.cache_hits = Counter(
            'retrieval_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'retrieval_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_errors = Counter(
            'retrieval_cache_errors_total',
            'Cache operations that failed and were absorbed',
            ['operation'],
            registry=self.registry
        )

        self.cache_latency = Histogram(
            'retrieval_cache_latency_seconds',
            'Cache operation latency',
            ['operation'],
            registry=self.registry
        )

        # Blend weight
        self.alpha = Gauge(
            'retrieval_alpha',
            'Current default blend weight (1.0 = pure vector search)',
            registry=self.registry
        )

        self.alpha_cache_size = Gauge(
            'retrieval_alpha_cache_size',
            'Entries held by the blend weight cache',
            registry=self.registry
        )

        self.alpha_cache_hits = Counter(
            'retrieval_alpha_cache_hits_total',
            'Blend weight cache hits',
            registry=self.registry
        )

        self.alpha_cache_misses = Counter(
            'retrieval_alpha_cache_misses_total',
            'Blend weight cache misses',
            registry=self.registry
        )

        # Drift monitor
        self.ragas_score = Gauge(
            'retrieval_ragas_score',
            'Aggregate quality score of the last drift cycle',
            registry=self.registry
        )

        self.drift_magnitude = Gauge(
            'retrieval_drift_magnitude',
            'Absolute distance between measured and target quality',
            registry=self.registry
        )

        self.drift_samples = Gauge(
            'retrieval_drift_samples',
            'Samples evaluated by the last drift cycle',
            registry=self.registry
        )

        self.drift_cycles = Counter(
            'retrieval_drift_cycles_total',
            'Drift cycles partitioned by outcome',
            ['outcome'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_query(self, query_type: str = "hybrid") -> None:
        """Count one incoming search query."""
        self.search_queries.labels(type=query_type).inc()

    def record_search_latency(self, latency_class: str, duration: float) -> None:
        """Record search latency under ``cached``, ``uncached`` or ``error``."""
        if latency_class not in LATENCY_CLASSES:
            raise ValueError(f"Unknown latency class: {latency_class}")
        self.search_latency.labels(latency_class=latency_class).observe(duration)

    def record_cache_hit(self, cache_type: str) -> None:
        """Record cache hit."""
        self.cache_hits.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        """Record cache miss."""
        self.cache_misses.labels(cache_type=cache_type).inc()

    def record_cache_error(self, operation: str) -> None:
        """Record an absorbed cache failure."""
        self.cache_errors.labels(operation=operation).inc()

    def record_cache_latency(self, operation: str, duration: float) -> None:
        """Record cache round-trip latency in seconds."""
        self.cache_latency.labels(operation=operation).observe(duration)

    def set_alpha(self, alpha: float) -> None:
        """Publish the current default blend weight."""
        self.alpha.set(alpha)

    def record_alpha_cache(self, hit: bool, size: int) -> None:
        """Record a blend weight cache lookup and its current size."""
        if hit:
            self.alpha_cache_hits.inc()
        else:
            self.alpha_cache_misses.inc()
        self.alpha_cache_size.set(size)

    def record_drift_cycle(
        self,
        outcome: str,
        ragas_score: Optional[float] = None,
        alpha: Optional[float] = None,
        drift_magnitude: Optional[float] = None,
        samples: Optional[int] = None
    ) -> None:
        """Export the metrics of one drift cycle.

        Gauges are only updated for values the cycle actually produced, so a
        failed or skipped cycle leaves the last good readings in place.
        """
        self.drift_cycles.labels(outcome=outcome).inc()
        if ragas_score is not None:
            self.ragas_score.set(ragas_score)
        if alpha is not None:
            self.alpha.set(alpha)
        if drift_magnitude is not None:
            self.drift_magnitude.set(drift_magnitude)
        if samples is not None:
            self.drift_samples.set(samples)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create the process-wide metrics collector.

    Returns a singleton to avoid duplicate collectors/labels.
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
        logger.debug("Metrics collector created", service=service_name)
    return _metrics_collector
