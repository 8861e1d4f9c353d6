"""
Persistence strategy configuration.

Provides Pydantic settings shared by the local-disk, blob-store and
document-store strategies: serialization limits, timeouts, retries and
lock behavior.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageConfig(BaseSettings):
    """
    Configuration for persistence strategies.

    Settings can be overridden via environment variables prefixed with STORAGE_.
    """

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Serialization limits
    max_document_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1024,
        description="Maximum size of one serialized document (bytes)",
    )
    max_json_depth: int = Field(
        default=64,
        ge=4,
        le=512,
        description="Maximum nesting depth accepted when (de)serializing",
    )
    max_string_length: int = Field(
        default=1024 * 1024,
        ge=1024,
        description="Maximum length of any single string value",
    )

    # Resilience
    operation_timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        le=600.0,
        description="Timeout per storage call before it is treated as transient",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for transient storage failures",
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Base delay (seconds) for exponential backoff",
    )
    retry_max_delay: float = Field(
        default=30.0,
        ge=0.0,
        le=300.0,
        description="Cap on a single backoff delay (seconds)",
    )

    # Locking
    lock_stale_after_seconds: int = Field(
        default=300,
        ge=1,
        description="Age after which an abandoned local lock file may be broken",
    )

    # Document store
    document_table: str = Field(
        default="semantic_model_documents",
        pattern=r"^[a-z_][a-z0-9_]*$",
        description="PostgreSQL table holding entity and index documents",
    )
    vector_field_path: str = Field(
        default="embedding.vector",
        description="JSON path of the primary vector inside entity documents",
    )
