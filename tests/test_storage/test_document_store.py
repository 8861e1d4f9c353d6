"""Tests for the document-store persistence strategy and its Postgres container."""

import json

import pytest

from src.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from src.semantic_model.model import SemanticModel
from src.semantic_model.schemas import Column, Table
from src.storage.base import ModelHeader, PersistenceStrategy
from src.storage.document_store import (
    INDEX_DOCUMENT_ID,
    DocumentStorePersistenceStrategy,
    PostgresDocumentContainer,
)


class TestDocumentStoreStrategy:
    """Tests for DocumentStorePersistenceStrategy."""

    @pytest.mark.asyncio
    async def test_save_writes_one_partition(self, document_strategy, document_container, orders_model):
        """Entities and the index live in the location's partition."""
        await document_strategy.save_model(orders_model, "orders-db")

        docs = document_container.partitions["orders-db"]
        assert INDEX_DOCUMENT_ID in docs
        assert "orders-db:table:dbo.customer" in docs
        assert "orders-db:storedprocedure:dbo.usp_placeorder" in docs
        assert docs["orders-db:table:dbo.customer"][0] == "entity"

    @pytest.mark.asyncio
    async def test_vector_stored_inline(
        self, document_strategy, document_container, orders_model, sample_envelope
    ):
        """The vector is embedded in the entity document."""
        customer = await orders_model.find_table("dbo", "Customer")
        customer.embedding = sample_envelope

        await document_strategy.save_model(orders_model, "orders-db")

        body = json.loads(document_container.partitions["orders-db"]["orders-db:table:dbo.customer"][1])
        assert body["embedding"]["vector"] == sample_envelope.vector
        assert body["embedding"]["metadata"]["dimensions"] == 4

    @pytest.mark.asyncio
    async def test_custom_vector_field_path(self, document_container, storage_config, orders_model, sample_envelope):
        """The vector field path is configurable."""
        strategy = DocumentStorePersistenceStrategy(
            document_container, storage_config, vector_field_path="search.contentVector"
        )
        customer = await orders_model.find_table("dbo", "Customer")
        customer.embedding = sample_envelope

        await strategy.save_model(orders_model, "orders-db")
        loaded = await strategy.load_model("orders-db")

        body = json.loads(document_container.partitions["orders-db"]["orders-db:table:dbo.customer"][1])
        assert body["search"]["contentVector"] == sample_envelope.vector
        assert (await loaded.find_table("dbo", "Customer")).embedding.vector == sample_envelope.vector

    @pytest.mark.parametrize(
        "path",
        [
            "embedding",
            "embedding.metadata",
            "embedding.metadata.vector",
            "embedding.namedVectors",
            "data.vector",
            "id",
        ],
    )
    def test_vector_field_path_over_reserved_field_rejected(
        self, document_container, storage_config, path
    ):
        """A vector path that would overwrite or nest inside document fields is refused."""
        with pytest.raises(ConfigurationError, match="reserved"):
            DocumentStorePersistenceStrategy(document_container, storage_config, vector_field_path=path)

    def test_vector_field_path_with_empty_segment_rejected(self, document_container, storage_config):
        with pytest.raises(ConfigurationError, match="empty segments"):
            DocumentStorePersistenceStrategy(
                document_container, storage_config, vector_field_path="search..vector"
            )

    @pytest.mark.asyncio
    async def test_load_reads_each_collection_in_one_query(
        self, document_strategy, document_container, orders_model
    ):
        """Each collection is fetched with a single read_many."""
        await document_strategy.save_model(orders_model, "orders-db")

        loaded = await document_strategy.load_model("orders-db")

        assert len(await loaded.get_all_entities()) == 4
        assert document_container.read_many_calls == 3

    @pytest.mark.asyncio
    async def test_commit_changes(self, document_strategy, document_container, orders_model):
        """Upserts and deletes apply in one batch."""
        await document_strategy.save_model(orders_model, "orders-db")
        order = await orders_model.find_table("dbo", "Order")

        index = await document_strategy.commit_changes(
            "orders-db",
            ModelHeader.of(orders_model),
            [Table(schema="dbo", name="Invoice")],
            [order.ref],
        )

        docs = document_container.partitions["orders-db"]
        assert "orders-db:table:dbo.invoice" in docs
        assert "orders-db:table:dbo.order" not in docs
        assert sorted(ref.name for ref in index.entities) == [
            "ActiveCustomers", "Customer", "Invoice", "usp_PlaceOrder",
        ]

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back(
        self, document_strategy, document_container, orders_model
    ):
        """A failing write leaves the partition untouched."""
        await document_strategy.save_model(orders_model, "orders-db")
        before = dict(document_container.partitions["orders-db"])

        document_container.fail_on = "invoice"
        with pytest.raises(TransientError):
            await document_strategy.commit_changes(
                "orders-db",
                ModelHeader.of(orders_model),
                [Table(schema="dbo", name="Invoice")],
                [],
            )

        assert document_container.partitions["orders-db"] == before

    @pytest.mark.asyncio
    async def test_concurrent_writer_conflicts(self, document_strategy, document_container, orders_model):
        """A second writer on the same partition gets ConflictError."""
        async with document_container.batch("orders-db"):
            with pytest.raises(ConflictError):
                await document_strategy.save_model(orders_model, "orders-db")

    @pytest.mark.asyncio
    async def test_delete_and_missing(self, document_strategy, document_container, orders_model):
        """Deleting removes the partition; deleting again is NotFoundError."""
        await document_strategy.save_model(orders_model, "orders-db")

        await document_strategy.delete_model("orders-db")

        assert "orders-db" not in document_container.partitions
        assert not await document_strategy.exists("orders-db")
        with pytest.raises(NotFoundError):
            await document_strategy.delete_model("orders-db")

    @pytest.mark.asyncio
    async def test_list_models(self, document_strategy, model_factory):
        """Partitions with an index are listed by prefix."""
        await document_strategy.save_model(model_factory(), "team-a-orders")
        await document_strategy.save_model(model_factory(), "team-a-billing")
        await document_strategy.save_model(model_factory(), "team-b-hr")

        assert await document_strategy.list_models("Team-A") == ["team-a-billing", "team-a-orders"]

    @pytest.mark.asyncio
    async def test_names_that_normalize_alike_round_trip(self, document_strategy, document_container):
        """Entities whose names differ only in dropped characters get distinct documents."""
        model = SemanticModel(
            name="orders-db",
            source="sqlserver://orders",
            tables=[
                Table(schema="dbo", name="Order Items", columns=[Column(name="A", type="int")]),
                Table(schema="dbo", name="Order-Items", columns=[Column(name="B", type="int")]),
            ],
        )

        await document_strategy.save_model(model, "orders-db")
        loaded = await document_strategy.load_model("orders-db")

        entity_docs = [
            doc_id for doc_id, (doc_type, _) in document_container.partitions["orders-db"].items()
            if doc_type == "entity"
        ]
        assert len(entity_docs) == 2
        assert [c.name for c in (await loaded.find_table("dbo", "Order Items")).columns] == ["A"]
        assert [c.name for c in (await loaded.find_table("dbo", "Order-Items")).columns] == ["B"]

    @pytest.mark.asyncio
    async def test_commit_of_lookalike_name_keeps_both(self, document_strategy, document_container):
        """An upsert of a lookalike name does not overwrite the stored entity."""
        model = SemanticModel(
            name="orders-db", source="s", tables=[Table(schema="dbo", name="Order-Items")]
        )
        await document_strategy.save_model(model, "orders-db")

        index = await document_strategy.commit_changes(
            "orders-db", ModelHeader.of(model), [Table(schema="dbo", name="Order Items")], []
        )

        assert sorted(ref.name for ref in index.entities) == ["Order Items", "Order-Items"]
        assert len(set(ref.reference for ref in index.entities)) == 2


class TestReferenceCollisions:
    """Tests for the shared storage-reference collision check."""

    def test_distinct_entities_sharing_a_reference_rejected(self):
        with pytest.raises(ValidationError, match="same storage reference"):
            PersistenceStrategy.ensure_unique_references(
                [Table(schema="dbo", name="A"), Table(schema="dbo", name="B")],
                lambda ref: "tables/shared.json",
                operation="save_model",
                location="orders-db",
            )

    def test_distinct_references_accepted(self):
        PersistenceStrategy.ensure_unique_references(
            [Table(schema="dbo", name="A"), Table(schema="dbo", name="B")],
            lambda ref: ref.name,
            operation="save_model",
            location="orders-db",
        )


class TestPostgresDocumentContainer:
    """Tests for the JSONB container against a mocked Database."""

    @pytest.mark.asyncio
    async def test_table_created_once(self, mock_database):
        """initialize() runs the DDL only on first use."""
        container = PostgresDocumentContainer(mock_database, "semantic_model_documents")

        await container.read("orders-db", INDEX_DOCUMENT_ID)
        await container.read("orders-db", INDEX_DOCUMENT_ID)

        ddl_calls = [c for c in mock_database.execute.await_args_list if "CREATE TABLE" in c.args[0]]
        assert len(ddl_calls) == 1
        assert "semantic_model_documents" in ddl_calls[0].args[0]

    @pytest.mark.asyncio
    async def test_batch_takes_advisory_lock(self, mock_database):
        """Batches run in a transaction under an advisory lock per partition."""
        container = PostgresDocumentContainer(mock_database)

        async with container.batch("orders-db") as batch:
            await batch.upsert("orders-db:table:dbo.a", "entity", "{}")

        lock_call = mock_database.conn.fetchval.await_args_list[0]
        assert "pg_try_advisory_xact_lock" in lock_call.args[0]
        assert lock_call.args[1] == "semantic_model_documents:orders-db"
        upsert_sql = mock_database.conn.execute.await_args_list[0].args[0]
        assert "ON CONFLICT (partition_key, id)" in upsert_sql

    @pytest.mark.asyncio
    async def test_batch_conflict(self, mock_database):
        """A held advisory lock raises ConflictError."""
        mock_database.conn.fetchval.return_value = False
        container = PostgresDocumentContainer(mock_database)

        with pytest.raises(ConflictError):
            async with container.batch("orders-db"):
                pass

    @pytest.mark.asyncio
    async def test_delete_partition_count(self, mock_database):
        """Deleted row counts are parsed from the command tag."""
        mock_database.conn.execute.return_value = "DELETE 5"
        container = PostgresDocumentContainer(mock_database)

        async with container.batch("orders-db") as batch:
            assert await batch.delete_partition() == 5

    @pytest.mark.asyncio
    async def test_read_many(self, mock_database):
        """read_many maps ids to bodies."""
        mock_database.fetch.return_value = [{"id": "a", "body": "{}"}]
        container = PostgresDocumentContainer(mock_database)

        assert await container.read_many("orders-db", ["a", "b"]) == {"a": "{}"}
        assert await container.read_many("orders-db", []) == {}

    @pytest.mark.asyncio
    async def test_list_partitions_matches_prefix_literally(self, mock_database):
        """Underscores in the prefix are not treated as wildcards."""
        mock_database.fetch.return_value = [{"partition_key": "orders_eu"}]
        container = PostgresDocumentContainer(mock_database)

        assert await container.list_partitions("orders_") == ["orders_eu"]

        sql, doc_id, prefix = mock_database.fetch.await_args.args
        assert "LIKE" not in sql
        assert "left(partition_key, length($2)) = $2" in sql
        assert doc_id == INDEX_DOCUMENT_ID
        assert prefix == "orders_"
