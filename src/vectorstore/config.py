"""
Configuration for vector indexing and search.

Uses Pydantic BaseSettings for environment variable support. Backend
sub-configs are nested models, set from the environment with a double
underscore (e.g. VECTOR_INDEX_MANAGED_SEARCH__ENDPOINT).
"""

from typing import Literal

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

VectorProvider = Literal["auto", "in-memory", "managed-search", "document-native"]


class ManagedSearchConfig(BaseModel):
    """Connection settings for the managed search service."""

    endpoint: str | None = Field(
        default=None,
        description="Base URL of the search service",
    )
    index_name: str | None = Field(
        default=None,
        description="Index holding the vector records",
    )
    api_key: SecretStr | None = Field(
        default=None,
        description="Admin key sent in the api-key header",
    )
    api_version: str = Field(
        default="2024-07-01",
        description="REST API version query parameter",
    )
    upsert_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Documents per index request",
    )


class DocumentNativeConfig(BaseModel):
    """Settings for vectors stored inline in entity documents."""

    # Plain strings: the policy reports bad values as ConfigurationError
    vector_field_path: str = Field(
        default="embedding.vector",
        description="Dotted JSON path of the vector inside entity documents",
    )
    distance_function: str = Field(
        default="cosine",
        description="cosine, dot-product or euclidean",
    )
    index_type: str = Field(
        default="tree-based",
        description="tree-based (HNSW), quantized (IVFFlat) or flat (no index)",
    )


class HybridSearchConfig(BaseModel):
    """Vector plus keyword search weighting."""

    enabled: bool = Field(
        default=False,
        description="Use hybrid search where the backend supports it",
    )
    text_weight: float = Field(
        default=0.5,
        ge=0.0,
        description="Weight of the keyword score",
    )
    vector_weight: float = Field(
        default=0.5,
        ge=0.0,
        description="Weight of the vector score",
    )


class VectorIndexConfig(BaseSettings):
    """
    Configuration for the vector orchestrator and its backends.

    All settings can be overridden via environment variables with
    VECTOR_INDEX_ prefix (e.g., VECTOR_INDEX_PROVIDER=in-memory).
    """

    model_config = SettingsConfigDict(
        env_prefix="VECTOR_INDEX_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    provider: VectorProvider = Field(
        default="auto",
        description="Vector backend; auto picks one from the persistence strategy",
    )
    collection_name: str = Field(
        default="semantic-entities",
        min_length=1,
        description="Logical collection for vector records",
    )
    push_on_generate: bool = Field(
        default=True,
        description="Push new vectors to an external index during generation",
    )
    provision_if_missing: bool = Field(
        default=False,
        description="Create the external index when it does not exist",
    )
    # Validated by VectorIndexPolicy so a bad value surfaces as ConfigurationError
    expected_dimensions: int = Field(
        default=3072,
        description="Length every generated vector must have",
    )
    embedding_service_id: str | None = Field(
        default=None,
        description="Embedding service recorded in metadata",
    )
    allowed_for_repository: list[str] = Field(
        default_factory=lambda: ["local_disk", "blob_store"],
        description="Persistence strategies allowed to push to an external index",
    )
    search_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Timeout for one backend request",
    )

    managed_search: ManagedSearchConfig = Field(default_factory=ManagedSearchConfig)
    document_native: DocumentNativeConfig = Field(default_factory=DocumentNativeConfig)
    hybrid: HybridSearchConfig = Field(default_factory=HybridSearchConfig)
