"""
Prometheus metrics for the persistence and vector pipeline.

Defines and exposes metrics for:
- Storage operation latency and errors per strategy
- Model cache hits/misses
- Embedding generation outcomes
- Vector upserts and search latency

Metrics are exposed via HTTP endpoint for Prometheus scraping.
"""

import logging

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from src.config.settings import get_settings

logger = logging.getLogger(__name__)

# Buckets for latency histograms (in seconds)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)


class MetricsCollector:
    """
    Prometheus metrics collector for semantic-store.

    Usage:
        metrics = get_metrics()
        metrics.record_storage_operation("local_disk", "save_model", 0.42, success=True)
        metrics.record_cache_lookup(hit=False)
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """
        Initialize Prometheus metrics.

        Args:
            registry: Registry to register with (tests pass a fresh one)
        """
        self.storage_operations = Counter(
            "semantic_store_storage_operations_total",
            "Storage strategy operations",
            ["strategy", "operation", "status"],  # status: success, error
            registry=registry,
        )
        self.storage_latency = Histogram(
            "semantic_store_storage_latency_seconds",
            "Storage strategy operation latency",
            ["strategy", "operation"],
            buckets=LATENCY_BUCKETS,
            registry=registry,
        )
        self.storage_errors = Counter(
            "semantic_store_storage_errors_total",
            "Storage errors by type",
            ["strategy", "error_type"],
            registry=registry,
        )

        self.cache_lookups = Counter(
            "semantic_store_cache_lookups_total",
            "Model cache lookups",
            ["result"],  # result: hit, miss
            registry=registry,
        )
        self.cache_entries = Gauge(
            "semantic_store_cache_entries",
            "Models currently held in the cache",
            registry=registry,
        )

        self.embeddings = Counter(
            "semantic_store_embeddings_total",
            "Embedding generation outcomes",
            ["outcome"],  # outcome: generated, skipped, failed
            registry=registry,
        )
        self.embedding_latency = Histogram(
            "semantic_store_embedding_latency_seconds",
            "Embedding generation latency per entity",
            buckets=LATENCY_BUCKETS,
            registry=registry,
        )

        self.vector_upserts = Counter(
            "semantic_store_vector_upserts_total",
            "Vector records upserted",
            ["provider"],
            registry=registry,
        )
        self.vector_search_latency = Histogram(
            "semantic_store_vector_search_latency_seconds",
            "Vector search latency",
            ["provider", "mode"],  # mode: vector, hybrid
            buckets=LATENCY_BUCKETS,
            registry=registry,
        )

        self._server_started = False

    def start_server(self, port: int | None = None) -> None:
        """
        Start Prometheus metrics HTTP server.

        Args:
            port: Port to listen on (default from settings)
        """
        if self._server_started:
            return

        port = port or get_settings().metrics_port
        start_http_server(port)
        self._server_started = True
        logger.info(f"Metrics server started on port {port}")

    def record_storage_operation(
        self,
        strategy: str,
        operation: str,
        duration: float,
        success: bool,
        error_type: str | None = None,
    ) -> None:
        """Record one storage strategy call."""
        status = "success" if success else "error"
        self.storage_operations.labels(
            strategy=strategy, operation=operation, status=status
        ).inc()
        self.storage_latency.labels(strategy=strategy, operation=operation).observe(
            duration
        )
        if error_type:
            self.storage_errors.labels(strategy=strategy, error_type=error_type).inc()

    def record_cache_lookup(self, hit: bool) -> None:
        """Record a cache hit or miss."""
        self.cache_lookups.labels(result="hit" if hit else "miss").inc()

    def set_cache_entries(self, count: int) -> None:
        """Set the number of cached models."""
        self.cache_entries.set(count)

    def record_embedding(self, outcome: str, latency: float | None = None) -> None:
        """
        Record an embedding outcome.

        Args:
            outcome: generated, skipped or failed
            latency: Generation latency in seconds (generated only)
        """
        self.embeddings.labels(outcome=outcome).inc()
        if latency is not None:
            self.embedding_latency.observe(latency)

    def record_vector_upsert(self, provider: str, count: int) -> None:
        """Record vector records pushed to a backend."""
        if count > 0:
            self.vector_upserts.labels(provider=provider).inc(count)

    def record_vector_search(self, provider: str, mode: str, latency: float) -> None:
        """Record search latency for a backend."""
        self.vector_search_latency.labels(provider=provider, mode=mode).observe(latency)


# Global metrics instance
_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
