"""
Embedding generator configuration.

Provides Pydantic settings for the local transformer generator and the
HTTP (OpenAI-compatible) generator, plus the Redis embedding cache.
"""

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class EmbeddingConfig(BaseSettings):
    """
    Configuration for embedding generation.

    Settings can be overridden via environment variables prefixed with EMBEDDING_.
    """

    model_config = SettingsConfigDict(
        env_prefix="EMBEDDING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    provider: Literal["transformers", "http"] = Field(
        default="transformers",
        description="Which generator implementation to build",
    )
    service_id: str | None = Field(
        default=None,
        description="Identifier recorded in embedding metadata (e.g. deployment name)",
    )

    # Model configuration
    model_name: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="HuggingFace model name (transformers) or model id (http)",
    )
    dimensions: int = Field(
        default=384,
        ge=1,
        description="Embedding vector dimension produced by the model",
    )
    max_sequence_length: int = Field(
        default=256,
        ge=8,
        description="Maximum token sequence length for the model",
    )

    # Local inference
    use_fp16: bool = Field(
        default=True,
        description="Use FP16 (half precision) for GPU acceleration",
    )
    device: Literal["auto", "cpu", "cuda", "mps"] = Field(
        default="auto",
        description="Device for model inference (auto detects best available)",
    )
    chunk_overlap: int = Field(
        default=32,
        ge=0,
        description="Number of overlapping tokens between chunks",
    )

    # HTTP service
    endpoint: str | None = Field(
        default=None,
        description="Base URL of an OpenAI-compatible embeddings API",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="API key sent in the request header",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Timeout for one embeddings request",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for throttled or failed requests",
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay (seconds) for exponential backoff",
    )

    # Caching configuration
    cache_enabled: bool = Field(
        default=True,
        description="Enable Redis caching for embeddings",
    )
    cache_ttl_hours: int = Field(
        default=168,
        ge=1,
        description="Cache TTL in hours (default: 1 week)",
    )
    cache_key_prefix: str = Field(
        default="emb:",
        description="Redis key prefix for cached embeddings",
    )

    @property
    def cache_ttl_seconds(self) -> int:
        """Get cache TTL in seconds."""
        return self.cache_ttl_hours * 3600
