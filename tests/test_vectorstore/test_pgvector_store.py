"""Unit tests for PgVectorDocumentStore."""

import json

import asyncpg
import pytest

from src.errors import ConfigurationError, TransientError
from src.vectorstore.config import DocumentNativeConfig, VectorIndexConfig
from src.vectorstore.pgvector_store import PgVectorDocumentStore


def make_store(mock_database, **native) -> PgVectorDocumentStore:
    config = VectorIndexConfig(
        provider="document-native",
        expected_dimensions=4,
        document_native=DocumentNativeConfig(**native),
    )
    return PgVectorDocumentStore(mock_database, config)


class TestIndexStatement:
    """Tests for index DDL per index type."""

    def test_vector_path_over_metadata_rejected(self, mock_database):
        """No index is built over the embedding metadata object."""
        with pytest.raises(ConfigurationError, match="reserved document field"):
            make_store(mock_database, vector_field_path="embedding.metadata")

    def test_tree_based_is_hnsw(self, mock_database):
        statement = make_store(mock_database).index_statement()

        assert "USING hnsw" in statement
        assert "vector_cosine_ops" in statement
        assert "((body #>> '{embedding,vector}')::vector(4))" in statement

    def test_quantized_is_ivfflat(self, mock_database):
        statement = make_store(
            mock_database, index_type="quantized", distance_function="euclidean"
        ).index_statement()

        assert "USING ivfflat" in statement
        assert "vector_l2_ops" in statement
        assert "lists = 100" in statement

    @pytest.mark.asyncio
    async def test_flat_creates_no_index(self, mock_database):
        store = make_store(mock_database, index_type="flat")

        assert store.index_statement() is None
        await store.ensure_index()
        mock_database.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ensure_index_failure(self, mock_database):
        mock_database.execute.side_effect = asyncpg.exceptions.UndefinedObjectError(
            'type "vector" does not exist'
        )

        with pytest.raises(ConfigurationError, match="vector index"):
            await make_store(mock_database).ensure_index()

    def test_unsupported_distance(self, mock_database):
        with pytest.raises(ConfigurationError):
            make_store(mock_database, distance_function="manhattan")

    def test_stores_inline(self, mock_database):
        assert make_store(mock_database).stores_inline


class TestQueries:
    """Tests for search and lookups."""

    @pytest.mark.asyncio
    async def test_search(self, mock_database):
        """Cosine search filters by model prefix and maps rows to hits."""
        mock_database.fetch.return_value = [
            {"id": "orders-db:table:dbo.customer", "entity_type": "table",
             "schema": "dbo", "name": "Customer", "score": 0.93},
        ]
        store = make_store(mock_database)

        hits = await store.search([0.1, 0.2, 0.3, 0.4], "Orders DB", limit=3)

        assert hits[0].id == "orders-db:table:dbo.customer"
        assert hits[0].score == pytest.approx(0.93)
        sql, vector, prefix, limit = mock_database.fetch.await_args.args
        assert "<=>" in sql
        assert "1 - (" in sql
        assert vector == "[0.1,0.2,0.3,0.4]"
        assert prefix == "orders-db:"
        assert limit == 3

    @pytest.mark.asyncio
    async def test_dot_product_operator(self, mock_database):
        store = make_store(mock_database, distance_function="dot-product")

        await store.search([0.1, 0.2, 0.3, 0.4], "orders-db")

        assert "<#>" in mock_database.fetch.await_args.args[0]

    @pytest.mark.asyncio
    async def test_search_zero_limit(self, mock_database):
        assert await make_store(mock_database).search([0.1] * 4, "orders-db", limit=0) == []
        mock_database.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_field_path(self, mock_database):
        store = make_store(mock_database, vector_field_path="search.contentVector")

        await store.list_ids("orders-db")

        assert "'{search,contentVector}'" in mock_database.fetch.await_args.args[0]

    @pytest.mark.asyncio
    async def test_get_by_ids_reads_inline_vector(self, mock_database):
        body = {
            "id": "orders-db:table:dbo.customer",
            "modelName": "orders-db",
            "entityType": "table",
            "schema": "dbo",
            "name": "Customer",
            "embedding": {
                "vector": [1, 2, 3, 4],
                "metadata": {
                    "model": "m",
                    "dimensions": 4,
                    "contentHash": "h",
                    "lastUpdatedUtc": "2024-01-15T10:30:00+00:00",
                },
            },
        }
        mock_database.fetch.return_value = [
            {"id": "orders-db:table:dbo.customer", "body": json.dumps(body)}
        ]

        (record,) = await make_store(mock_database).get_by_ids(["orders-db:table:dbo.customer"])

        assert record.vector == [1.0, 2.0, 3.0, 4.0]
        assert record.content_hash == "h"
        assert record.embedding_model == "m"
        assert record.model == "orders-db"

    @pytest.mark.asyncio
    async def test_transient_errors_are_mapped(self, mock_database):
        mock_database.fetch.side_effect = asyncpg.exceptions.TooManyConnectionsError("too many")

        with pytest.raises(TransientError):
            await make_store(mock_database).list_ids("orders-db")


class TestWrites:
    """Tests for inline vector updates."""

    @pytest.mark.asyncio
    async def test_upsert_updates_existing_documents(self, mock_database, record_factory):
        mock_database.conn.execute.side_effect = ["UPDATE 1", "UPDATE 0"]
        store = make_store(mock_database)

        updated = await store.upsert([
            record_factory("Customer", [0.1, 0.2, 0.3, 0.4]),
            record_factory("Ghost", [0.1, 0.2, 0.3, 0.4]),
        ])

        assert updated == 1
        sql, path, vector_json, doc_id = mock_database.conn.execute.await_args_list[0].args
        assert "jsonb_set" in sql
        assert path == ["embedding", "vector"]
        assert json.loads(vector_json) == [0.1, 0.2, 0.3, 0.4]
        assert doc_id == "orders-db:table:dbo.customer"

    @pytest.mark.asyncio
    async def test_delete_strips_vector(self, mock_database):
        mock_database.execute.return_value = "UPDATE 2"

        deleted = await make_store(mock_database).delete(["a", "b"])

        assert deleted == 2
        assert "#- '{embedding,vector}'" in mock_database.execute.await_args.args[0]

    @pytest.mark.asyncio
    async def test_empty_inputs(self, mock_database):
        store = make_store(mock_database)

        assert await store.upsert([]) == 0
        assert await store.delete([]) == 0
        assert await store.get_by_ids([]) == []
