"""
Abstract base class and data models for vector store implementations.

Defines the interface that all vector backends must implement, plus the
record and hit shapes shared by every backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class VectorRecord:
    """
    One entity's vector as pushed to an index.

    Attributes:
        id: Entity key ({model}:{kind}:{schema}.{name})
        model: Semantic model name
        entity_type: Entity kind value (table, view, storedprocedure)
        schema: Database schema
        name: Entity name
        text: Text the vector was generated from
        vector: Embedding vector
        embedding_model: Embedding model identifier
        content_hash: SHA-256 (hex) of text
        last_updated: When the vector was generated
    """

    id: str
    model: str
    entity_type: str
    schema: str
    name: str
    text: str
    vector: list[float]
    embedding_model: str
    content_hash: str
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class VectorSearchHit:
    """
    Result from a vector search. Identical for every backend.

    Attributes:
        id: Entity key of the matched record
        entity_type: Entity kind value
        schema: Database schema
        name: Entity name
        score: Backend similarity score (higher is more similar)
    """

    id: str
    entity_type: str
    schema: str
    name: str
    score: float


class VectorStore(ABC):
    """
    Abstract base class for vector backends.

    Backends that keep vectors inside the persisted entity documents
    report stores_inline=True; the orchestrator never pushes to them and
    treats them as always in sync.

    All methods are async to support non-blocking I/O.
    """

    provider: str = "abstract"

    @property
    def supports_hybrid(self) -> bool:
        """Whether hybrid_search combines keyword and vector scores."""
        return False

    @property
    def stores_inline(self) -> bool:
        """Whether vectors live in the persisted entity documents."""
        return False

    @abstractmethod
    async def upsert(self, records: list[VectorRecord]) -> int:
        """
        Insert or replace records by id.

        Returns:
            Number of records written
        """
        ...

    @abstractmethod
    async def search(
        self,
        query_vector: list[float],
        model_name: str,
        limit: int = 5,
    ) -> list[VectorSearchHit]:
        """
        Nearest records of one model.

        Returns:
            At most limit hits sorted by descending score
        """
        ...

    async def hybrid_search(
        self,
        query_text: str,
        query_vector: list[float],
        model_name: str,
        limit: int = 5,
    ) -> list[VectorSearchHit]:
        """Keyword plus vector search; pure vector search unless overridden."""
        return await self.search(query_vector, model_name, limit)

    @abstractmethod
    async def delete(self, ids: list[str]) -> int:
        """
        Delete records by id.

        Returns:
            Number of records deleted
        """
        ...

    @abstractmethod
    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        """Records for the given ids; unknown ids are omitted."""
        ...

    @abstractmethod
    async def list_ids(self, model_name: str) -> list[str]:
        """Every record id stored for a model."""
        ...

    async def ensure_index(self) -> None:
        """Make sure the backing index exists."""
        return None

    async def close(self) -> None:
        """Release resources held by the backend."""
        return None
