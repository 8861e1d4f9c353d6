"""
Document-store persistence strategy.

Each entity is one JSON document; its vector lives inline at a
configurable field path (default ``embedding.vector``) with metadata at
``embedding.metadata``. There is no separate vector collection. A
per-model index document lists every entity and is written in the same
transaction as the entity documents.

The strategy talks to a DocumentContainer. PostgresDocumentContainer is
the production implementation: a JSONB table accessed through asyncpg,
with transaction-scoped advisory locks for exclusive writers.
"""

import asyncio
import dataclasses
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import asyncpg
import structlog

from src.errors import ConflictError, NotFoundError, TransientError, ValidationError
from src.semantic_model.keys import EntityKeyBuilder
from src.semantic_model.model import SemanticModel
from src.semantic_model.sanitizer import PathValidator
from src.semantic_model.schemas import EntityRef, SemanticModelEntity
from src.storage.base import ModelHeader, PersistenceStrategy
from src.storage.config import StorageConfig
from src.storage.database import Database
from src.storage.dto import (
    IndexDocument,
    check_vector_field_path,
    document_id,
    from_document_dto,
    to_document_dto,
    utc_now,
)
from src.storage.serializer import SecureJsonSerializer

logger = structlog.get_logger(__name__)

INDEX_DOCUMENT_ID = "__index__"

TRANSIENT_DB_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.QueryCanceledError,
    ConnectionError,
    OSError,
)


class DocumentBatch(Protocol):
    """Writes inside one transaction on one partition."""

    async def read(self, doc_id: str) -> str | None:
        ...

    async def upsert(self, doc_id: str, doc_type: str, body: str) -> None:
        ...

    async def delete(self, doc_ids: list[str]) -> int:
        ...

    async def delete_partition(self) -> int:
        ...


class DocumentContainer(Protocol):
    """Partitioned JSON document storage."""

    def batch(self, partition_key: str) -> AbstractAsyncContextManager[DocumentBatch]:
        """Open an exclusive transactional batch; raises ConflictError if held."""
        ...

    async def read(self, partition_key: str, doc_id: str) -> str | None:
        ...

    async def read_many(self, partition_key: str, doc_ids: list[str]) -> dict[str, str]:
        ...

    async def list_partitions(self, prefix: str) -> list[str]:
        ...


class _PostgresBatch:
    def __init__(self, conn: asyncpg.Connection, table: str, partition_key: str):
        self._conn = conn
        self._table = table
        self._partition_key = partition_key

    async def read(self, doc_id: str) -> str | None:
        return await self._conn.fetchval(
            f"SELECT body::text FROM {self._table} WHERE partition_key = $1 AND id = $2",
            self._partition_key,
            doc_id,
        )

    async def upsert(self, doc_id: str, doc_type: str, body: str) -> None:
        await self._conn.execute(
            f"""
            INSERT INTO {self._table} (partition_key, id, doc_type, body, updated_at)
            VALUES ($1, $2, $3, $4::jsonb, NOW())
            ON CONFLICT (partition_key, id) DO UPDATE SET
                doc_type = EXCLUDED.doc_type,
                body = EXCLUDED.body,
                updated_at = NOW()
            """,
            self._partition_key,
            doc_id,
            doc_type,
            body,
        )

    async def delete(self, doc_ids: list[str]) -> int:
        if not doc_ids:
            return 0
        result = await self._conn.execute(
            f"DELETE FROM {self._table} WHERE partition_key = $1 AND id = ANY($2)",
            self._partition_key,
            doc_ids,
        )
        return int(result.split()[-1])

    async def delete_partition(self) -> int:
        result = await self._conn.execute(
            f"DELETE FROM {self._table} WHERE partition_key = $1",
            self._partition_key,
        )
        return int(result.split()[-1])


class PostgresDocumentContainer:
    """
    JSONB document table on PostgreSQL.

    Schema is created on first use. Writers take a transaction-scoped
    advisory lock keyed by partition, so a second concurrent writer gets
    ConflictError instead of interleaving.
    """

    def __init__(self, database: Database, table: str = "semantic_model_documents"):
        self._db = database
        self._table = table
        self._ready = False
        self._init_lock = asyncio.Lock()

    @property
    def table(self) -> str:
        return self._table

    async def initialize(self) -> None:
        """Create the document table if missing."""
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            await self._db.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    partition_key TEXT NOT NULL,
                    id TEXT NOT NULL,
                    doc_type TEXT NOT NULL,
                    body JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    PRIMARY KEY (partition_key, id)
                )
                """
            )
            self._ready = True

    @asynccontextmanager
    async def batch(self, partition_key: str) -> AsyncIterator[_PostgresBatch]:
        await self.initialize()
        async with self._db.transaction() as conn:
            locked = await conn.fetchval(
                "SELECT pg_try_advisory_xact_lock(hashtext($1))",
                f"{self._table}:{partition_key}",
            )
            if not locked:
                raise ConflictError(
                    "Model is locked by another writer", location=partition_key
                )
            yield _PostgresBatch(conn, self._table, partition_key)

    async def read(self, partition_key: str, doc_id: str) -> str | None:
        await self.initialize()
        return await self._db.fetchval(
            f"SELECT body::text FROM {self._table} WHERE partition_key = $1 AND id = $2",
            partition_key,
            doc_id,
        )

    async def read_many(self, partition_key: str, doc_ids: list[str]) -> dict[str, str]:
        if not doc_ids:
            return {}
        await self.initialize()
        rows = await self._db.fetch(
            f"SELECT id, body::text AS body FROM {self._table} "
            f"WHERE partition_key = $1 AND id = ANY($2)",
            partition_key,
            doc_ids,
        )
        return {row["id"]: row["body"] for row in rows}

    async def list_partitions(self, prefix: str) -> list[str]:
        await self.initialize()
        rows = await self._db.fetch(
            f"SELECT partition_key FROM {self._table} "
            f"WHERE id = $1 AND left(partition_key, length($2)) = $2 "
            f"ORDER BY partition_key",
            INDEX_DOCUMENT_ID,
            prefix,
        )
        return [row["partition_key"] for row in rows]


class DocumentStorePersistenceStrategy(PersistenceStrategy):
    """
    Stores each model as DocumentEntityDto documents in one partition.

    The location is the model's partition; it is normalized the same way
    as entity keys so vector search can filter by model name.
    """

    name = "document_store"

    def __init__(
        self,
        container: DocumentContainer,
        config: StorageConfig | None = None,
        serializer: SecureJsonSerializer | None = None,
        vector_field_path: str | None = None,
    ):
        super().__init__(config, serializer)
        self._container = container
        self._vector_field_path = check_vector_field_path(
            vector_field_path or self._config.vector_field_path, operation="create_strategy"
        )

    @property
    def vector_field_path(self) -> str:
        return self._vector_field_path

    def _partition(self, location: str, operation: str) -> str:
        PathValidator.validate_location(location, operation=operation)
        partition = EntityKeyBuilder.normalize_part(location)
        if not partition:
            raise ValidationError("Location has no usable characters", operation=operation, location=location)
        return partition

    async def _call(self, operation: str, location: str, func):
        async def attempt():
            try:
                return await func()
            except TRANSIENT_DB_ERRORS as e:
                raise TransientError(
                    f"Document store unavailable: {type(e).__name__}",
                    operation=operation,
                    location=location,
                ) from e

        return await self.run(operation, location, attempt)

    def _check_ids(
        self, partition: str, entities: list[SemanticModelEntity], operation: str
    ) -> None:
        self.ensure_unique_references(
            entities,
            lambda ref: document_id(partition, ref),
            operation=operation,
            location=partition,
        )

    def _entity_body(self, partition: str, entity: SemanticModelEntity) -> tuple[str, str]:
        doc = to_document_dto(partition, entity, self._vector_field_path)
        return doc["id"], self._serializer.serialize(doc, location=f"{partition}/{doc['id']}")

    # Save

    async def save_model(self, model: SemanticModel, location: str) -> None:
        partition = self._partition(location, "save_model")
        entities = await model.get_all_entities()
        self._check_ids(partition, entities, "save_model")

        bodies: list[tuple[str, str]] = []
        refs: list[EntityRef] = []
        for entity in entities:
            doc_id, body = self._entity_body(partition, entity)
            bodies.append((doc_id, body))
            refs.append(dataclasses.replace(entity.ref, reference=doc_id))

        async def write() -> None:
            async with self._container.batch(partition) as batch:
                created = utc_now()
                previous = await batch.read(INDEX_DOCUMENT_ID)
                if previous is not None:
                    created = IndexDocument.from_dict(
                        self._serializer.deserialize(previous, location=partition),
                        location=partition,
                    ).created_utc
                header = ModelHeader.of(model)
                index = IndexDocument(
                    name=header.name,
                    source=header.source,
                    description=header.description,
                    entities=refs,
                    created_utc=created,
                )
                await batch.delete_partition()
                for doc_id, body in bodies:
                    await batch.upsert(doc_id, "entity", body)
                await batch.upsert(
                    INDEX_DOCUMENT_ID,
                    "index",
                    self._serializer.serialize(index.to_dict(), location=partition),
                )

        await self._call("save_model", partition, write)
        logger.info(
            "Saved semantic model",
            strategy=self.name,
            model_name=model.name,
            location=partition,
            entities=len(refs),
        )

    async def commit_changes(
        self,
        location: str,
        header: ModelHeader,
        upserts: list[SemanticModelEntity],
        deletes: list[EntityRef],
    ) -> IndexDocument:
        partition = self._partition(location, "commit_changes")
        self._check_ids(partition, upserts, "commit_changes")

        bodies: list[tuple[str, str]] = []
        upsert_refs: list[EntityRef] = []
        for entity in upserts:
            doc_id, body = self._entity_body(partition, entity)
            bodies.append((doc_id, body))
            upsert_refs.append(dataclasses.replace(entity.ref, reference=doc_id))

        result: list[IndexDocument] = []

        async def write() -> None:
            async with self._container.batch(partition) as batch:
                previous = await batch.read(INDEX_DOCUMENT_ID)
                if previous is None:
                    index = IndexDocument(name=header.name, source=header.source)
                else:
                    index = IndexDocument.from_dict(
                        self._serializer.deserialize(previous, location=partition),
                        location=partition,
                    )
                delete_ids = []
                for ref in deletes:
                    stored = index.find(ref)
                    delete_ids.append(
                        (stored.reference if stored else None) or document_id(partition, ref)
                    )
                written = {doc_id for doc_id, _ in bodies}
                await batch.delete([d for d in delete_ids if d not in written])
                for doc_id, body in bodies:
                    await batch.upsert(doc_id, "entity", body)

                new_index = dataclasses.replace(
                    index.apply(upsert_refs, deletes),
                    name=header.name,
                    source=header.source,
                    description=header.description,
                )
                await batch.upsert(
                    INDEX_DOCUMENT_ID,
                    "index",
                    self._serializer.serialize(new_index.to_dict(), location=partition),
                )
                result[:] = [new_index]

        await self._call("commit_changes", partition, write)
        logger.info(
            "Committed entity changes",
            strategy=self.name,
            model_name=header.name,
            upserts=len(upserts),
            deletes=len(deletes),
        )
        return result[0]

    # Load

    async def load_index(self, location: str) -> IndexDocument:
        partition = self._partition(location, "load_index")
        body = await self._call(
            "load_index", partition, lambda: self._container.read(partition, INDEX_DOCUMENT_ID)
        )
        if body is None:
            raise NotFoundError("Model not found", operation="load_index", location=partition)
        return IndexDocument.from_dict(
            self._serializer.deserialize(body, location=partition), location=partition
        )

    async def load_entity(self, location: str, ref: EntityRef) -> SemanticModelEntity:
        entities = await self.load_entities(location, [ref])
        return entities[0]

    async def load_entities(
        self, location: str, refs: list[EntityRef]
    ) -> list[SemanticModelEntity]:
        """Fetch a whole collection in one query."""
        partition = self._partition(location, "load_entities")
        ids = [ref.reference or document_id(partition, ref) for ref in refs]
        bodies = await self._call(
            "load_entities", partition, lambda: self._container.read_many(partition, ids)
        )

        entities = []
        for doc_id in ids:
            body = bodies.get(doc_id)
            if body is None:
                raise NotFoundError(
                    f"Entity document {doc_id} not found",
                    operation="load_entity",
                    location=partition,
                )
            doc = self._serializer.deserialize(body, location=f"{partition}/{doc_id}")
            entities.append(
                from_document_dto(doc, self._vector_field_path, location=f"{partition}/{doc_id}")
            )
        return entities

    # Delete / exists / list

    async def delete_model(self, location: str) -> None:
        partition = self._partition(location, "delete_model")

        async def remove() -> int:
            async with self._container.batch(partition) as batch:
                return await batch.delete_partition()

        deleted = await self._call("delete_model", partition, remove)
        if deleted == 0:
            raise NotFoundError("Model not found", operation="delete_model", location=partition)
        logger.info("Deleted semantic model", strategy=self.name, location=partition, documents=deleted)

    async def exists(self, location: str) -> bool:
        partition = self._partition(location, "exists")
        body = await self._call(
            "exists", partition, lambda: self._container.read(partition, INDEX_DOCUMENT_ID)
        )
        return body is not None

    async def list_models(self, root: str) -> list[str]:
        prefix = EntityKeyBuilder.normalize_part(root) if root else ""
        return await self._call(
            "list_models", prefix or "*", lambda: self._container.list_partitions(prefix)
        )


