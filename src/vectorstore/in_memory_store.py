"""
In-process vector store.

Keeps records in a dict and ranks them by cosine similarity with numpy.
Used for local development, for tests, and for local/blob persistence
when no managed search service is configured.
"""

import asyncio
import time

import numpy as np
import structlog

from src.errors import ValidationError
from src.observability.metrics import get_metrics
from src.semantic_model.keys import EntityKeyBuilder
from src.vectorstore.base import VectorRecord, VectorSearchHit, VectorStore

logger = structlog.get_logger(__name__)


class InMemoryVectorStore(VectorStore):
    """
    Dict-backed vector store with cosine similarity search.

    Records of different dimensions may coexist; a query only scores
    records whose length matches the query vector.
    """

    provider = "in-memory"

    def __init__(self) -> None:
        self._records: dict[str, VectorRecord] = {}
        self._lock = asyncio.Lock()
        self._metrics = get_metrics()

    def __len__(self) -> int:
        return len(self._records)

    async def upsert(self, records: list[VectorRecord]) -> int:
        for record in records:
            if not record.vector:
                raise ValidationError(f"Record {record.id} has an empty vector", operation="upsert")
        async with self._lock:
            for record in records:
                self._records[record.id] = record
        self._metrics.record_vector_upsert(self.provider, len(records))
        logger.debug("Upserted vector records", count=len(records))
        return len(records)

    async def search(
        self,
        query_vector: list[float],
        model_name: str,
        limit: int = 5,
    ) -> list[VectorSearchHit]:
        if limit <= 0 or not query_vector:
            return []

        prefix = EntityKeyBuilder.model_prefix(model_name)
        async with self._lock:
            candidates = [
                r for r in self._records.values()
                if r.id.startswith(prefix) and len(r.vector) == len(query_vector)
            ]
        if not candidates:
            return []

        start = time.perf_counter()
        query = np.asarray(query_vector, dtype=np.float32)
        matrix = np.asarray([r.vector for r in candidates], dtype=np.float32)

        # Zero vectors score 0 instead of NaN
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = np.inf
        scores = (matrix @ query) / norms

        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:limit]
        hits = [
            VectorSearchHit(
                id=candidates[i].id,
                entity_type=candidates[i].entity_type,
                schema=candidates[i].schema,
                name=candidates[i].name,
                score=float(scores[i]),
            )
            for i in order
        ]
        self._metrics.record_vector_search(self.provider, "vector", time.perf_counter() - start)
        return hits

    async def delete(self, ids: list[str]) -> int:
        async with self._lock:
            removed = [self._records.pop(i) for i in ids if i in self._records]
        return len(removed)

    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        async with self._lock:
            return [self._records[i] for i in ids if i in self._records]

    async def list_ids(self, model_name: str) -> list[str]:
        prefix = EntityKeyBuilder.model_prefix(model_name)
        async with self._lock:
            return [i for i in self._records if i.startswith(prefix)]
