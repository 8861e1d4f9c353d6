"""Fixtures for repository tests."""

import pytest
from prometheus_client import CollectorRegistry

from src.observability.metrics import MetricsCollector
from src.repository.service import SemanticModelRepository
from src.storage.factory import PersistenceStrategyFactory


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def repository(test_settings, storage_config, metrics) -> SemanticModelRepository:
    """Repository over local disk."""
    factory = PersistenceStrategyFactory(test_settings, storage_config)
    return SemanticModelRepository(factory, test_settings, metrics=metrics)


@pytest.fixture
def location(tmp_path) -> str:
    """Model directory under tmp_path."""
    return str(tmp_path / "orders-db")
