"""
Local performance monitoring for repository operations.

Keeps a bounded, time-windowed record of every operation's duration and
outcome so callers can inspect per-operation statistics and get simple
tuning recommendations without a metrics backend. Prometheus histograms
are recorded separately by the repository.
"""

import time
from collections import defaultdict, deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.repository.options import PerformanceMonitoringOptions

logger = structlog.get_logger(__name__)

MAX_RECORDS_PER_OPERATION = 10_000


@dataclass
class OperationRecord:
    operation: str
    duration: float
    success: bool
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class OperationStatistics:
    operation: str
    count: int
    success_count: int
    average_duration: float
    min_duration: float
    max_duration: float
    total_duration: float

    @property
    def success_rate(self) -> float:
        return 100.0 * self.success_count / self.count if self.count else 0.0


@dataclass
class PerformanceMetrics:
    total_operations: int
    successful_operations: int
    average_duration: float
    total_duration: float
    operations: dict[str, OperationStatistics]

    @property
    def success_rate(self) -> float:
        if not self.total_operations:
            return 0.0
        return 100.0 * self.successful_operations / self.total_operations


@dataclass
class PerformanceRecommendation:
    category: str
    severity: str  # high, medium, low, info
    message: str
    operation: str | None = None


class TrackingContext:
    """Handle yielded by PerformanceMonitor.track(); mark failures or add metadata."""

    def __init__(self, operation: str, metadata: dict[str, Any]):
        self.operation = operation
        self.metadata = metadata
        self.success = True

    def mark_failed(self) -> None:
        self.success = False


class PerformanceMonitor:
    """
    Records operation timings in memory.

    Usage:
        monitor = PerformanceMonitor()
        with monitor.track("load_model", location=path):
            ...
        stats = monitor.get_operation_statistics("load_model")
    """

    def __init__(self, options: PerformanceMonitoringOptions | None = None):
        self._options = options or PerformanceMonitoringOptions()
        self._records: dict[str, deque[OperationRecord]] = defaultdict(
            lambda: deque(maxlen=MAX_RECORDS_PER_OPERATION)
        )

    @property
    def enabled(self) -> bool:
        return self._options.enable_local_monitoring

    @contextmanager
    def track(self, operation: str, **metadata: Any) -> Iterator[TrackingContext]:
        """Time a block; an exception marks the operation failed and propagates."""
        context = TrackingContext(operation, dict(metadata))
        start = time.perf_counter()
        try:
            yield context
        except BaseException:
            context.success = False
            raise
        finally:
            self.record(operation, time.perf_counter() - start, context.success, context.metadata)

    def record(
        self,
        operation: str,
        duration: float,
        success: bool,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        self._records[operation].append(
            OperationRecord(operation, duration, success, time.time(), metadata or {})
        )

        threshold = self._options.slow_operation_threshold.total_seconds()
        if duration > threshold:
            logger.warning(
                "Slow repository operation",
                operation=operation,
                duration_ms=round(duration * 1000, 2),
                threshold_ms=threshold * 1000,
            )
        elif self._options.enable_detailed_timing:
            logger.debug(
                "Repository operation timed",
                operation=operation,
                duration_ms=round(duration * 1000, 2),
                success=success,
            )

    def _prune(self) -> None:
        retention = self._options.metrics_retention
        if retention is None:
            return
        cutoff = time.time() - retention.total_seconds()
        for records in self._records.values():
            while records and records[0].timestamp < cutoff:
                records.popleft()

    def get_operation_statistics(self, operation: str) -> OperationStatistics | None:
        self._prune()
        records = self._records.get(operation)
        if not records:
            return None
        durations = [r.duration for r in records]
        return OperationStatistics(
            operation=operation,
            count=len(records),
            success_count=sum(1 for r in records if r.success),
            average_duration=sum(durations) / len(durations),
            min_duration=min(durations),
            max_duration=max(durations),
            total_duration=sum(durations),
        )

    def get_metrics(self) -> PerformanceMetrics:
        self._prune()
        operations: dict[str, OperationStatistics] = {}
        for name in list(self._records):
            stats = self.get_operation_statistics(name)
            if stats is not None:
                operations[name] = stats

        total = sum(s.count for s in operations.values())
        total_duration = sum(s.total_duration for s in operations.values())
        return PerformanceMetrics(
            total_operations=total,
            successful_operations=sum(s.success_count for s in operations.values()),
            average_duration=total_duration / total if total else 0.0,
            total_duration=total_duration,
            operations=operations,
        )

    def get_recommendations(self) -> list[PerformanceRecommendation]:
        """Heuristic tuning hints derived from the recorded operations."""
        metrics = self.get_metrics()
        slow = self._options.slow_operation_threshold.total_seconds()
        recommendations: list[PerformanceRecommendation] = []

        if metrics.total_operations > 10 and metrics.success_rate < 95:
            recommendations.append(PerformanceRecommendation(
                "reliability",
                "high",
                f"Low success rate: {metrics.success_rate:.1f}%. Check storage "
                f"availability and retry settings.",
            ))
        if metrics.average_duration > slow:
            recommendations.append(PerformanceRecommendation(
                "performance",
                "medium",
                f"Average operation takes {metrics.average_duration:.2f}s. "
                f"Consider enabling caching or lazy loading.",
            ))

        for stats in metrics.operations.values():
            if stats.count > 5 and stats.success_rate < 90:
                recommendations.append(PerformanceRecommendation(
                    "operation_reliability",
                    "medium",
                    f"'{stats.operation}' succeeds {stats.success_rate:.1f}% of the time",
                    stats.operation,
                ))
            if stats.average_duration > 2 * slow:
                recommendations.append(PerformanceRecommendation(
                    "operation_performance",
                    "medium",
                    f"'{stats.operation}' averages {stats.average_duration:.2f}s",
                    stats.operation,
                ))
            if stats.count > 3 and stats.max_duration > 3 * stats.average_duration:
                recommendations.append(PerformanceRecommendation(
                    "consistency",
                    "low",
                    f"'{stats.operation}' has latency spikes "
                    f"(max {stats.max_duration:.2f}s, avg {stats.average_duration:.2f}s)",
                    stats.operation,
                ))

        if metrics.total_operations > 1000 and self._options.metrics_retention is None:
            recommendations.append(PerformanceRecommendation(
                "resources",
                "info",
                "Many operations recorded without a retention window; set metrics_retention.",
            ))
        return recommendations

    def reset(self) -> None:
        self._records.clear()
        logger.info("Performance metrics reset")
