"""
Per-call repository options.

Options are frozen dataclasses. The builder is immutable too: every
``with_*`` call returns a new builder, so a module-level builder can be
shared between tasks and threads without one caller's choices leaking
into another's.
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta

from src.errors import ConfigurationError

DEFAULT_CACHE_EXPIRATION = timedelta(minutes=30)


@dataclass(frozen=True)
class PerformanceMonitoringOptions:
    """Local performance-monitoring settings."""

    enable_local_monitoring: bool = True
    metrics_retention: timedelta | None = timedelta(hours=24)
    enable_detailed_timing: bool = False
    slow_operation_threshold: timedelta = timedelta(seconds=5)


@dataclass(frozen=True)
class RepositoryOptions:
    """Options for a single repository call."""

    enable_lazy_loading: bool = False
    enable_change_tracking: bool = False
    enable_caching: bool = False
    cache_expiration: timedelta = DEFAULT_CACHE_EXPIRATION
    strategy_name: str | None = None
    max_concurrent_operations: int | None = None
    performance_monitoring: PerformanceMonitoringOptions = field(
        default_factory=PerformanceMonitoringOptions
    )

    def validate(self) -> "RepositoryOptions":
        """
        Check option values.

        Raises:
            ConfigurationError: On a non-positive TTL or concurrency limit
        """
        if self.cache_expiration <= timedelta(0):
            raise ConfigurationError("cache_expiration must be positive")
        if self.max_concurrent_operations is not None and self.max_concurrent_operations < 1:
            raise ConfigurationError("max_concurrent_operations must be >= 1")
        if self.strategy_name is not None and not self.strategy_name.strip():
            raise ConfigurationError("strategy_name must not be blank")
        retention = self.performance_monitoring.metrics_retention
        if retention is not None and retention <= timedelta(0):
            raise ConfigurationError("metrics_retention must be positive")
        return self


class RepositoryOptionsBuilder:
    """
    Copy-on-write builder for RepositoryOptions.

    Usage:
        options = (
            RepositoryOptionsBuilder()
            .with_lazy_loading()
            .with_caching(timedelta(minutes=5))
            .build()
        )
    """

    def __init__(self, options: RepositoryOptions | None = None):
        self._options = options or RepositoryOptions()

    def _with(self, **changes) -> "RepositoryOptionsBuilder":
        return RepositoryOptionsBuilder(replace(self._options, **changes))

    def with_lazy_loading(self, enabled: bool = True) -> "RepositoryOptionsBuilder":
        return self._with(enable_lazy_loading=enabled)

    def with_change_tracking(self, enabled: bool = True) -> "RepositoryOptionsBuilder":
        return self._with(enable_change_tracking=enabled)

    def with_caching(
        self, enabled: bool = True, expiration: timedelta | None = None
    ) -> "RepositoryOptionsBuilder":
        if expiration is None:
            return self._with(enable_caching=enabled)
        return self._with(enable_caching=enabled, cache_expiration=expiration)

    def with_strategy(self, name: str | None) -> "RepositoryOptionsBuilder":
        return self._with(strategy_name=name)

    def with_max_concurrent_operations(self, limit: int | None) -> "RepositoryOptionsBuilder":
        return self._with(max_concurrent_operations=limit)

    def with_performance_monitoring(
        self,
        enable_local_monitoring: bool | None = None,
        metrics_retention: timedelta | None = None,
        enable_detailed_timing: bool | None = None,
        slow_operation_threshold: timedelta | None = None,
    ) -> "RepositoryOptionsBuilder":
        """Override selected performance-monitoring fields; None keeps the current value."""
        current = self._options.performance_monitoring
        changes = {
            "enable_local_monitoring": enable_local_monitoring,
            "metrics_retention": metrics_retention,
            "enable_detailed_timing": enable_detailed_timing,
            "slow_operation_threshold": slow_operation_threshold,
        }
        updated = replace(current, **{k: v for k, v in changes.items() if v is not None})
        return self._with(performance_monitoring=updated)

    def build(self) -> RepositoryOptions:
        return self._options.validate()
