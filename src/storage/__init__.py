"""Storage layer: persistence strategies for semantic models."""

from src.storage.base import ModelHeader, PersistenceStrategy
from src.storage.blob_store import BlobContainerClient, BlobStorePersistenceStrategy
from src.storage.config import StorageConfig
from src.storage.database import Database
from src.storage.document_store import (
    DocumentContainer,
    DocumentStorePersistenceStrategy,
    PostgresDocumentContainer,
)
from src.storage.dto import IndexDocument
from src.storage.factory import PersistenceStrategyFactory
from src.storage.local_disk import LocalDiskPersistenceStrategy
from src.storage.serializer import SecureJsonSerializer

__all__ = [
    "BlobContainerClient",
    "BlobStorePersistenceStrategy",
    "Database",
    "DocumentContainer",
    "DocumentStorePersistenceStrategy",
    "IndexDocument",
    "LocalDiskPersistenceStrategy",
    "ModelHeader",
    "PersistenceStrategy",
    "PersistenceStrategyFactory",
    "PostgresDocumentContainer",
    "SecureJsonSerializer",
    "StorageConfig",
]
