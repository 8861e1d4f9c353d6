"""Pytest fixtures for vectorstore tests."""

import asyncio
import hashlib

import numpy as np
import pytest
from prometheus_client import CollectorRegistry

from src.embedding.service import EmbeddingGenerator
from src.errors import TransientError
from src.observability.metrics import MetricsCollector
from src.repository.service import SemanticModelRepository
from src.storage.factory import PersistenceStrategyFactory
from src.vectorstore.base import VectorRecord
from src.vectorstore.config import ManagedSearchConfig, VectorIndexConfig

DIMENSIONS = 8


def fake_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Deterministic unit vector seeded from the text."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:4], "big")
    vector = np.random.default_rng(seed).standard_normal(dimensions)
    return [float(x) for x in vector / np.linalg.norm(vector)]


class FakeEmbeddingGenerator(EmbeddingGenerator):
    """
    Deterministic generator.

    Texts containing fail_on raise TransientError at once; every other
    call yields briefly so a failure completes first.
    """

    def __init__(self, dimensions: int = DIMENSIONS, fail_on: str | None = None):
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.calls: list[str] = []

    @property
    def model_id(self) -> str:
        return "fake-embedding-model"

    @property
    def service_id(self) -> str | None:
        return "fake-service"

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise TransientError("embedding service unavailable", operation="embed")
        await asyncio.sleep(0.01)
        return fake_vector(text, self.dimensions)


@pytest.fixture
def generator() -> FakeEmbeddingGenerator:
    """8-dimensional fake generator."""
    return FakeEmbeddingGenerator()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def vector_config() -> VectorIndexConfig:
    """Auto provider, 8 dimensions, no managed search configured."""
    return VectorIndexConfig(provider="auto", expected_dimensions=DIMENSIONS)


@pytest.fixture
def managed_config() -> VectorIndexConfig:
    """Managed search pointing at a fake service."""
    return VectorIndexConfig(
        provider="managed-search",
        expected_dimensions=4,
        managed_search=ManagedSearchConfig(
            endpoint="https://search.example.com/",
            index_name="semantic-entities",
            api_key="admin-key-secret",
            upsert_batch_size=2,
        ),
    )


@pytest.fixture
def repository(test_settings, storage_config, metrics, document_container) -> SemanticModelRepository:
    """Repository with local_disk as default and document_store available."""
    factory = PersistenceStrategyFactory(
        test_settings, storage_config, document_container=document_container
    )
    return SemanticModelRepository(factory, test_settings, metrics=metrics)


@pytest.fixture
def record_factory():
    """Builds VectorRecords for the orders-db model."""

    def make(name: str, vector: list[float], content_hash: str = "hash", model: str = "orders-db"):
        return VectorRecord(
            id=f"{model}:table:dbo.{name.lower()}",
            model=model,
            entity_type="table",
            schema="dbo",
            name=name,
            text=f"Type: Table\nSchema: dbo\nName: {name}\n",
            vector=vector,
            embedding_model="fake-embedding-model",
            content_hash=content_hash,
        )

    return make


@pytest.fixture
def generator_factory():
    """Builds FakeEmbeddingGenerators with custom dimensions or failures."""
    return FakeEmbeddingGenerator


@pytest.fixture
def vector_for():
    """The vector FakeEmbeddingGenerator returns for a text."""
    return fake_vector
