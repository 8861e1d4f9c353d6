"""Vector backend construction keyed by resolved provider name."""

import structlog

from src.errors import ConfigurationError
from src.resilience.http import HTTPClient
from src.storage.config import StorageConfig
from src.storage.database import Database
from src.vectorstore.base import VectorStore
from src.vectorstore.config import VectorIndexConfig
from src.vectorstore.in_memory_store import InMemoryVectorStore
from src.vectorstore.managed_search_store import ManagedSearchVectorStore
from src.vectorstore.pgvector_store import PgVectorDocumentStore
from src.vectorstore.policy import DOCUMENT_NATIVE, IN_MEMORY, MANAGED_SEARCH

logger = structlog.get_logger(__name__)


def create_vector_store(
    provider: str,
    config: VectorIndexConfig,
    database: Database | None = None,
    *,
    http_client: HTTPClient | None = None,
    storage_config: StorageConfig | None = None,
) -> VectorStore:
    """
    Build the backend for a provider returned by VectorIndexPolicy.

    Args:
        provider: in-memory, managed-search or document-native
        config: Vector index configuration
        database: Connected Database (document-native only)
        http_client: HTTP client override (managed-search only)
        storage_config: Storage settings naming the document table

    Raises:
        ConfigurationError: Unknown provider or missing dependency
    """
    if provider == IN_MEMORY:
        store: VectorStore = InMemoryVectorStore()
    elif provider == MANAGED_SEARCH:
        store = ManagedSearchVectorStore(config, http_client=http_client)
    elif provider == DOCUMENT_NATIVE:
        if database is None:
            raise ConfigurationError(
                "document-native vector search requires a database",
                operation="create_vector_store",
            )
        store = PgVectorDocumentStore(database, config, storage_config)
    else:
        raise ConfigurationError(
            f"Unknown vector provider '{provider}'", operation="create_vector_store"
        )

    logger.info("Created vector store", provider=provider)
    return store
