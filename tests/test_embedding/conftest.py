"""Pytest fixtures for embedding tests."""

from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from src.embedding.config import EmbeddingConfig
from src.embedding.service import TransformerEmbeddingGenerator


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    """Small CPU configuration without caching."""
    return EmbeddingConfig(
        model_name="sentence-transformers/all-MiniLM-L6-v2",
        dimensions=8,
        max_sequence_length=10,
        chunk_overlap=2,
        use_fp16=False,
        device="cpu",
        cache_enabled=False,
    )


@pytest.fixture
def http_config() -> EmbeddingConfig:
    """HTTP provider configuration pointing at a fake endpoint."""
    return EmbeddingConfig(
        provider="http",
        endpoint="https://embeddings.example.com/v1/",
        api_key="sk-test-secret",
        model_name="text-embedding-3-small",
        dimensions=4,
        service_id="embeddings-eastus",
        max_retries=2,
        retry_base_delay=0.0,
    )


@pytest.fixture
def mock_tokenizer():
    """Whitespace tokenizer: one token id per word."""
    tokenizer = MagicMock()

    def encode_side_effect(text, add_special_tokens=True):
        return list(range(len(text.split())))

    def decode_side_effect(tokens, skip_special_tokens=True):
        return " ".join(f"w{t}" for t in tokens)

    tokenizer.encode = MagicMock(side_effect=encode_side_effect)
    tokenizer.decode = MagicMock(side_effect=decode_side_effect)
    return tokenizer


def fake_embed_single(text: str) -> np.ndarray:
    """Deterministic 8-dim vector from the text."""
    rng = np.random.default_rng(sum(text.encode("utf-8")))
    return rng.standard_normal(8).astype(np.float32)


@pytest.fixture
def mock_generator(embedding_config, mock_tokenizer) -> TransformerEmbeddingGenerator:
    """Transformer generator with the model replaced by fakes."""
    generator = TransformerEmbeddingGenerator(config=embedding_config)
    generator._tokenizer = mock_tokenizer
    generator._model = MagicMock()
    generator._embed_single = MagicMock(side_effect=fake_embed_single)
    return generator


@pytest.fixture
def mock_redis():
    """Redis client double."""
    redis_mock = AsyncMock()
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.setex = AsyncMock(return_value=True)
    redis_mock.ping = AsyncMock(return_value=True)
    return redis_mock
