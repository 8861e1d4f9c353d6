"""
Vector indexing and search for semantic model entities.

Main components:
- VectorIndexConfig: provider selection and backend settings
- VectorIndexPolicy: resolves which backend a persistence strategy may use
- VectorRecordMapper: embeddable text, content hash and VectorRecord
- VectorStore: backend interface, with InMemoryVectorStore,
  ManagedSearchVectorStore and PgVectorDocumentStore implementations
- VectorOrchestrator: generate, search and reconcile
"""

from src.vectorstore.base import VectorRecord, VectorSearchHit, VectorStore
from src.vectorstore.config import (
    DocumentNativeConfig,
    HybridSearchConfig,
    ManagedSearchConfig,
    VectorIndexConfig,
)
from src.vectorstore.factory import create_vector_store
from src.vectorstore.in_memory_store import InMemoryVectorStore
from src.vectorstore.managed_search_store import ManagedSearchVectorStore
from src.vectorstore.mapper import VectorRecordMapper
from src.vectorstore.orchestrator import (
    GenerationFailure,
    GenerationSummary,
    ReconcileReport,
    VectorGenerationOptions,
    VectorOrchestrator,
)
from src.vectorstore.pgvector_store import PgVectorDocumentStore
from src.vectorstore.policy import VectorIndexPolicy

__all__ = [
    "DocumentNativeConfig",
    "GenerationFailure",
    "GenerationSummary",
    "HybridSearchConfig",
    "InMemoryVectorStore",
    "ManagedSearchConfig",
    "ManagedSearchVectorStore",
    "PgVectorDocumentStore",
    "ReconcileReport",
    "VectorGenerationOptions",
    "VectorIndexConfig",
    "VectorIndexPolicy",
    "VectorOrchestrator",
    "VectorRecord",
    "VectorRecordMapper",
    "VectorSearchHit",
    "VectorStore",
    "create_vector_store",
]
