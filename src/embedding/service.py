"""
Embedding generators.

An EmbeddingGenerator turns entity text into a vector. Two
implementations are provided:
- TransformerEmbeddingGenerator: local HuggingFace model with lazy
  loading, device detection, token chunking with mean pooling, FP16 on
  CUDA and an optional Redis cache keyed by content hash
- HttpEmbeddingGenerator: OpenAI-compatible ``/embeddings`` endpoint
  over httpx with retry on throttling and server errors

Generators do not validate dimensions; the orchestrator checks every
returned vector against the configured dimension.
"""

import asyncio
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any

import numpy as np
import redis.asyncio as redis
import structlog
import torch
from transformers import AutoModel, AutoTokenizer

from src.embedding.config import EmbeddingConfig
from src.errors import ConfigurationError, CorruptDataError
from src.resilience.http import HTTPClient, RetryConfig

logger = structlog.get_logger(__name__)


class EmbeddingGenerator(ABC):
    """Text to vector."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier of the embedding model, recorded in metadata."""
        ...

    @property
    def service_id(self) -> str | None:
        """Identifier of the embedding service/deployment, if any."""
        return None

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Generate the embedding for one text."""
        ...

    async def close(self) -> None:
        """Release resources held by the generator."""
        return None


class TransformerEmbeddingGenerator(EmbeddingGenerator):
    """
    Local transformer embeddings.

    Uses lazy initialization to defer model loading until the first
    embed call; the forward pass runs in a worker thread so the event
    loop stays responsive.

    Usage:
        generator = TransformerEmbeddingGenerator(EmbeddingConfig(device="cpu"))
        vector = await generator.embed("Table dbo.Customer ...")
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        redis_client: redis.Redis | None = None,
    ):
        """
        Initialize the generator. Model loading is deferred.

        Args:
            config: Embedding configuration (uses defaults if None)
            redis_client: Redis client for caching (optional)
        """
        self._config = config or EmbeddingConfig()
        self._redis = redis_client

        self._model: AutoModel | None = None
        self._tokenizer: AutoTokenizer | None = None
        self._device: torch.device | None = None
        self._model_lock = asyncio.Lock()

        logger.info(
            "TransformerEmbeddingGenerator created",
            model=self._config.model_name,
            cache_enabled=self._config.cache_enabled,
        )

    @property
    def model_id(self) -> str:
        return self._config.model_name

    @property
    def service_id(self) -> str | None:
        return self._config.service_id

    @property
    def is_initialized(self) -> bool:
        return self._model is not None

    def _detect_device(self) -> torch.device:
        """Detect the best available device for inference."""
        if self._device is not None:
            return self._device

        if self._config.device != "auto":
            self._device = torch.device(self._config.device)
            return self._device

        if torch.cuda.is_available():
            logger.info("Using CUDA device for embeddings")
            self._device = torch.device("cuda")
        elif torch.backends.mps.is_available():
            logger.info("Using MPS device for embeddings")
            self._device = torch.device("mps")
        else:
            logger.info("Using CPU for embeddings")
            self._device = torch.device("cpu")

        return self._device

    def _initialize(self) -> None:
        """Load model and tokenizer on first use."""
        if self._model is not None:
            return

        device = self._detect_device()
        logger.info("Loading embedding model", model=self._config.model_name)

        tokenizer = AutoTokenizer.from_pretrained(
            self._config.model_name,
            model_max_length=self._config.max_sequence_length,
        )
        model = AutoModel.from_pretrained(self._config.model_name)
        model.to(device)
        model.eval()

        if self._config.use_fp16 and device.type == "cuda":
            model = model.half()
            logger.info("FP16 inference enabled")

        self._tokenizer = tokenizer
        self._model = model
        logger.info(
            "Embedding model loaded",
            device=str(device),
            fp16=self._config.use_fp16 and device.type == "cuda",
        )

    def _make_cache_key(self, text: str) -> str:
        """Cache key from model name and content hash."""
        content_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]
        return f"{self._config.cache_key_prefix}{self._config.model_name}:{content_hash}"

    async def _get_cached_embedding(self, text: str) -> list[float] | None:
        if not self._config.cache_enabled or not self._redis:
            return None

        cache_key = self._make_cache_key(text)
        try:
            cached = await self._redis.get(cache_key)
            if cached:
                logger.debug("Embedding cache hit", key=cache_key)
                return json.loads(cached)
        except Exception as e:
            logger.warning("Embedding cache read failed", error=str(e))
        return None

    async def _cache_embedding(self, text: str, embedding: list[float]) -> None:
        if not self._config.cache_enabled or not self._redis:
            return

        try:
            await self._redis.setex(
                self._make_cache_key(text),
                self._config.cache_ttl_seconds,
                json.dumps(embedding),
            )
        except Exception as e:
            logger.warning("Embedding cache write failed", error=str(e))

    def _chunk_text(self, text: str) -> list[str]:
        """Split text into overlapping chunks that fit the model context."""
        tokenizer = self._tokenizer
        tokens = tokenizer.encode(text, add_special_tokens=False)

        # Reserve room for [CLS] and [SEP]
        max_tokens = self._config.max_sequence_length - 2
        if len(tokens) <= max_tokens:
            return [text]

        chunks = []
        stride = max(1, max_tokens - self._config.chunk_overlap)
        start = 0
        while start < len(tokens):
            end = min(start + max_tokens, len(tokens))
            chunks.append(tokenizer.decode(tokens[start:end], skip_special_tokens=True))
            if end >= len(tokens):
                break
            start += stride

        logger.debug("Split text into chunks", chunks=len(chunks))
        return chunks

    def _embed_single(self, text: str) -> np.ndarray:
        """Mean-pooled embedding of one chunk (synchronous)."""
        inputs = self._tokenizer(
            text,
            return_tensors="pt",
            truncation=True,
            max_length=self._config.max_sequence_length,
            padding=True,
        )
        device = self._detect_device()
        inputs = {k: v.to(device) for k, v in inputs.items()}

        with torch.no_grad():
            outputs = self._model(**inputs)

        # Mask padding tokens before averaging over the sequence
        attention_mask = inputs["attention_mask"]
        token_embeddings = outputs.last_hidden_state
        mask = attention_mask.unsqueeze(-1).expand(token_embeddings.size()).float()
        summed = torch.sum(token_embeddings * mask, dim=1)
        counts = torch.clamp(mask.sum(dim=1), min=1e-9)
        return (summed / counts).float().cpu().numpy()[0]

    def _embed_blocking(self, text: str) -> list[float]:
        self._initialize()
        chunks = self._chunk_text(text)
        if len(chunks) == 1:
            embedding = self._embed_single(chunks[0])
        else:
            embedding = np.mean(np.array([self._embed_single(c) for c in chunks]), axis=0)
        return [float(x) for x in embedding]

    async def embed(self, text: str) -> list[float]:
        """
        Generate the embedding for text.

        Empty text yields a zero vector of the configured dimension.
        """
        if not text.strip():
            return [0.0] * self._config.dimensions

        cached = await self._get_cached_embedding(text)
        if cached is not None:
            return cached

        # One thread touches the model at a time
        async with self._model_lock:
            result = await asyncio.to_thread(self._embed_blocking, text)

        await self._cache_embedding(text, result)
        return result

    async def close(self) -> None:
        """Drop the model; the Redis client is managed by the caller."""
        self._model = None
        self._tokenizer = None
        logger.info("TransformerEmbeddingGenerator closed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "initialized": self.is_initialized,
            "model": self._config.model_name,
            "device": str(self._device) if self._device else "not initialized",
            "cache_enabled": self._config.cache_enabled,
            "dimensions": self._config.dimensions,
        }

    async def is_cache_available(self) -> bool:
        """Check if Redis cache is available and responding."""
        if not self._config.cache_enabled or not self._redis:
            return False
        try:
            await self._redis.ping()
            return True
        except Exception:
            return False


class HttpEmbeddingGenerator(EmbeddingGenerator):
    """
    Embeddings from an OpenAI-compatible HTTP API.

    POSTs ``{"model": ..., "input": [text]}`` to ``{endpoint}/embeddings``
    and reads ``data[0].embedding``. The API key travels in the
    ``api-key`` and ``Authorization`` headers and is never logged.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        http_client: HTTPClient | None = None,
    ):
        self._config = config or EmbeddingConfig(provider="http")
        if not self._config.endpoint:
            raise ConfigurationError(
                "HTTP embedding provider requires EMBEDDING_ENDPOINT", operation="embed"
            )
        self._url = f"{self._config.endpoint.rstrip('/')}/embeddings"
        self._http = http_client or HTTPClient(
            RetryConfig(
                max_retries=self._config.max_retries,
                base_delay=self._config.retry_base_delay,
            ),
            timeout=self._config.request_timeout_seconds,
        )

    @property
    def model_id(self) -> str:
        return self._config.model_name

    @property
    def service_id(self) -> str | None:
        return self._config.service_id

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key is not None:
            key = self._config.api_key.get_secret_value()
            headers["api-key"] = key
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def embed(self, text: str) -> list[float]:
        if not text.strip():
            return [0.0] * self._config.dimensions

        response = await self._http.request(
            "POST",
            self._url,
            operation="embed",
            headers=self._headers(),
            json_body={"model": self._config.model_name, "input": [text]},
        )
        try:
            return [float(x) for x in response.json()["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise CorruptDataError(
                f"Unexpected embeddings response: {type(e).__name__}", operation="embed"
            ) from e

    async def close(self) -> None:
        await self._http.close()


def create_embedding_generator(
    config: EmbeddingConfig | None = None,
    redis_client: redis.Redis | None = None,
) -> EmbeddingGenerator:
    """Build the generator selected by config.provider."""
    config = config or EmbeddingConfig()
    if config.provider == "http":
        return HttpEmbeddingGenerator(config)
    return TransformerEmbeddingGenerator(config, redis_client=redis_client)
