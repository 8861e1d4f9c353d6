"""
pgvector implementation of the VectorStore interface over entity documents.

The document-store persistence strategy writes each entity's vector
inside its JSONB document. This backend searches those documents in
place: the vector is extracted from the configured field path and cast
to pgvector's ``vector`` type, so there is no separate vector table.
"""

import json
import time
from datetime import datetime
from typing import Any

import asyncpg
import structlog

from src.errors import ConfigurationError, TransientError
from src.observability.metrics import get_metrics
from src.semantic_model.keys import EntityKeyBuilder
from src.storage.config import StorageConfig
from src.storage.database import Database
from src.storage.document_store import TRANSIENT_DB_ERRORS
from src.storage.dto import EMBEDDING_METADATA_PATH, check_vector_field_path, get_path, utc_now
from src.vectorstore.base import VectorRecord, VectorSearchHit, VectorStore
from src.vectorstore.config import VectorIndexConfig

logger = structlog.get_logger(__name__)

# (operator, SQL turning the distance into a higher-is-better score)
DISTANCE_OPERATORS = {
    "cosine": ("<=>", "1 - ({distance})"),
    "dot-product": ("<#>", "-({distance})"),
    "euclidean": ("<->", "1 / (1 + ({distance}))"),
}

INDEX_OPS = {
    "cosine": "vector_cosine_ops",
    "dot-product": "vector_ip_ops",
    "euclidean": "vector_l2_ops",
}


def _json_path(dotted: str) -> str:
    """embedding.vector -> {embedding,vector} for the #> operators."""
    return "{" + ",".join(dotted.split(".")) + "}"


def _vector_literal(vector: list[float]) -> str:
    return f"[{','.join(str(float(x)) for x in vector)}]"


class PgVectorDocumentStore(VectorStore):
    """
    Document-native vector search with pgvector.

    Features:
    - Distance operator by configuration: <=> cosine, <#> inner product,
      <-> euclidean
    - HNSW (tree-based) or IVFFlat (quantized) expression index on the
      extracted vector; no index for flat
    - Vectors are written by the persistence strategy, so the store
      reports stores_inline=True
    """

    provider = "document-native"

    def __init__(
        self,
        database: Database,
        config: VectorIndexConfig | None = None,
        storage_config: StorageConfig | None = None,
    ):
        self._db = database
        self._config = config or VectorIndexConfig()
        native = self._config.document_native
        if native.distance_function not in DISTANCE_OPERATORS:
            raise ConfigurationError(
                f"Unsupported distance function '{native.distance_function}'",
                operation="create_vector_store",
            )
        self._table = (storage_config or StorageConfig()).document_table
        self._path = _json_path(
            check_vector_field_path(native.vector_field_path, operation="create_vector_store")
        )
        self._distance_function = native.distance_function
        self._index_type = native.index_type
        self._dimensions = self._config.expected_dimensions
        self._metrics = get_metrics()

    @property
    def stores_inline(self) -> bool:
        return True

    @property
    def vector_expression(self) -> str:
        return f"((body #>> '{self._path}')::vector({self._dimensions}))"

    async def _call(self, operation: str, func):
        try:
            return await func()
        except TRANSIENT_DB_ERRORS as e:
            raise TransientError(
                f"Database unavailable: {type(e).__name__}", operation=operation
            ) from e

    async def upsert(self, records: list[VectorRecord]) -> int:
        """
        Write vectors into existing entity documents.

        Only documents that already exist are updated; the persistence
        strategy owns document creation.
        """
        if not records:
            return 0
        sql = f"""
            UPDATE {self._table}
            SET body = jsonb_set(body, $1::text[], $2::jsonb, true),
                updated_at = NOW()
            WHERE id = $3 AND doc_type = 'entity'
        """
        path = self._path.strip("{}").split(",")

        async def write() -> int:
            updated = 0
            async with self._db.transaction() as conn:
                for record in records:
                    result = await conn.execute(sql, path, json.dumps(record.vector), record.id)
                    updated += int(result.split()[-1])
            return updated

        updated = await self._call("upsert", write)
        self._metrics.record_vector_upsert(self.provider, updated)
        logger.info(f"Upserted {updated}/{len(records)} inline vectors")
        return updated

    async def search(
        self,
        query_vector: list[float],
        model_name: str,
        limit: int = 5,
    ) -> list[VectorSearchHit]:
        if limit <= 0:
            return []
        operator, score_sql = DISTANCE_OPERATORS[self._distance_function]
        distance = f"{self.vector_expression} {operator} $1::vector"
        prefix = EntityKeyBuilder.model_prefix(model_name)

        sql = f"""
            SELECT
                id,
                body->>'entityType' AS entity_type,
                body->>'schema' AS schema,
                body->>'name' AS name,
                {score_sql.format(distance=distance)} AS score
            FROM {self._table}
            WHERE doc_type = 'entity'
              AND left(id, length($2)) = $2
              AND body #> '{self._path}' IS NOT NULL
              AND jsonb_array_length(body #> '{self._path}') = {self._dimensions}
            ORDER BY {distance}
            LIMIT $3
        """
        start = time.perf_counter()
        rows = await self._call(
            "search",
            lambda: self._db.fetch(sql, _vector_literal(query_vector), prefix, limit),
        )
        self._metrics.record_vector_search(self.provider, "vector", time.perf_counter() - start)
        return [self._row_to_hit(row) for row in rows]

    @staticmethod
    def _row_to_hit(row: Any) -> VectorSearchHit:
        return VectorSearchHit(
            id=row["id"],
            entity_type=row["entity_type"] or "",
            schema=row["schema"] or "",
            name=row["name"] or "",
            score=float(row["score"]),
        )

    async def delete(self, ids: list[str]) -> int:
        """Remove the inline vector (and its metadata) from entity documents."""
        if not ids:
            return 0
        sql = f"""
            UPDATE {self._table}
            SET body = body #- '{self._path}' #- '{_json_path(EMBEDDING_METADATA_PATH)}',
                updated_at = NOW()
            WHERE id = ANY($1) AND doc_type = 'entity' AND body #> '{self._path}' IS NOT NULL
        """
        result = await self._call("delete", lambda: self._db.execute(sql, ids))
        return int(result.split()[-1])

    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        if not ids:
            return []
        sql = f"""
            SELECT id, body::text AS body
            FROM {self._table}
            WHERE id = ANY($1) AND doc_type = 'entity' AND body #> '{self._path}' IS NOT NULL
        """
        rows = await self._call("get_by_ids", lambda: self._db.fetch(sql, ids))
        return [self._row_to_record(row["id"], json.loads(row["body"])) for row in rows]

    def _row_to_record(self, doc_id: str, doc: dict[str, Any]) -> VectorRecord:
        metadata = get_path(doc, EMBEDDING_METADATA_PATH) or {}
        vector = get_path(doc, self._config.document_native.vector_field_path) or []
        updated = metadata.get("lastUpdatedUtc")
        return VectorRecord(
            id=doc_id,
            model=doc.get("modelName") or "",
            entity_type=doc.get("entityType") or "",
            schema=doc.get("schema") or "",
            name=doc.get("name") or "",
            text="",
            vector=[float(x) for x in vector],
            embedding_model=metadata.get("model") or "",
            content_hash=metadata.get("contentHash") or "",
            last_updated=datetime.fromisoformat(updated) if updated else utc_now(),
        )

    async def list_ids(self, model_name: str) -> list[str]:
        sql = f"""
            SELECT id FROM {self._table}
            WHERE doc_type = 'entity'
              AND left(id, length($1)) = $1
              AND body #> '{self._path}' IS NOT NULL
            ORDER BY id
        """
        prefix = EntityKeyBuilder.model_prefix(model_name)
        rows = await self._call("list_ids", lambda: self._db.fetch(sql, prefix))
        return [row["id"] for row in rows]

    def index_statement(self) -> str | None:
        """DDL for the configured index type, None for flat."""
        ops = INDEX_OPS[self._distance_function]
        name = f"{self._table}_vector_idx"
        if self._index_type == "tree-based":
            return (
                f"CREATE INDEX IF NOT EXISTS {name} ON {self._table} "
                f"USING hnsw ({self.vector_expression} {ops}) WHERE doc_type = 'entity'"
            )
        if self._index_type == "quantized":
            return (
                f"CREATE INDEX IF NOT EXISTS {name} ON {self._table} "
                f"USING ivfflat ({self.vector_expression} {ops}) WITH (lists = 100) "
                "WHERE doc_type = 'entity'"
            )
        return None

    async def ensure_index(self) -> None:
        statement = self.index_statement()
        if statement is None:
            logger.info("Flat vector search, no index created")
            return
        try:
            await self._db.execute(statement)
        except asyncpg.PostgresError as e:
            if isinstance(e, TRANSIENT_DB_ERRORS):
                raise TransientError(
                    f"Database unavailable: {type(e).__name__}", operation="ensure_index"
                ) from e
            raise ConfigurationError(
                f"Could not create vector index: {e}", operation="ensure_index"
            ) from e
        logger.info(f"Ensured {self._index_type} vector index on {self._table}")
