"""Repository facade: options, caching, performance monitoring."""

from src.repository.cache import CacheStats, ModelCache
from src.repository.options import (
    PerformanceMonitoringOptions,
    RepositoryOptions,
    RepositoryOptionsBuilder,
)
from src.repository.performance import (
    OperationStatistics,
    PerformanceMetrics,
    PerformanceMonitor,
    PerformanceRecommendation,
)
from src.repository.service import SemanticModelRepository

__all__ = [
    "CacheStats",
    "ModelCache",
    "OperationStatistics",
    "PerformanceMetrics",
    "PerformanceMonitor",
    "PerformanceMonitoringOptions",
    "PerformanceRecommendation",
    "RepositoryOptions",
    "RepositoryOptionsBuilder",
    "SemanticModelRepository",
]
