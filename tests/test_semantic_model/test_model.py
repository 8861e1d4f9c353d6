"""Tests for the SemanticModel aggregate."""

import pytest

from src.errors import ValidationError
from src.semantic_model.lazy import LazyLoadingProxy
from src.semantic_model.model import SemanticModel
from src.semantic_model.schemas import (
    EmbeddingEnvelope,
    EmbeddingMetadata,
    EntityKind,
    StoredProcedure,
    Table,
    View,
)


class TestEntities:
    """Tests for entity schema types."""

    def test_invalid_name_rejected(self):
        """Entities with unsafe names cannot be built."""
        with pytest.raises(ValidationError):
            Table(schema="dbo", name="bad/name")

    def test_kind_and_labels(self):
        """Each entity type reports its kind."""
        assert Table(schema="dbo", name="A").kind is EntityKind.TABLE
        assert View(schema="dbo", name="A").kind is EntityKind.VIEW
        assert StoredProcedure(schema="dbo", name="A").kind.label == "Stored Procedure"
        assert EntityKind.STORED_PROCEDURE.folder == "storedprocedures"

    def test_envelope_dimension_mismatch(self):
        """Vector length must equal the recorded dimensions."""
        metadata = EmbeddingMetadata(model="m", dimensions=3, content_hash="h")
        with pytest.raises(ValidationError):
            EmbeddingEnvelope(vector=[0.1, 0.2], metadata=metadata)

    def test_metadata_requires_positive_dimensions(self):
        """Zero dimensions are invalid."""
        with pytest.raises(ValidationError):
            EmbeddingMetadata(model="m", dimensions=0, content_hash="h")


class TestSemanticModel:
    """Tests for eager and lazy models."""

    @pytest.mark.asyncio
    async def test_collections(self, orders_model):
        """Each kind has its own collection."""
        assert len(await orders_model.get_tables()) == 2
        assert len(await orders_model.get_views()) == 1
        assert len(await orders_model.get_stored_procedures()) == 1
        assert len(await orders_model.get_all_entities()) == 4

    @pytest.mark.asyncio
    async def test_find_is_case_insensitive(self, orders_model):
        """Lookups ignore case."""
        customer = await orders_model.find_table("DBO", "customer")
        assert customer is not None
        assert customer.name == "Customer"
        assert await orders_model.find_view("dbo", "Customer") is None

    @pytest.mark.asyncio
    async def test_duplicate_add_rejected(self, orders_model):
        """Adding an entity with an existing identity fails."""
        with pytest.raises(ValidationError, match="Duplicate"):
            await orders_model.add_entity(Table(schema="DBO", name="CUSTOMER"))

    def test_duplicate_in_constructor_rejected(self):
        """Duplicates passed to the constructor fail."""
        with pytest.raises(ValidationError):
            SemanticModel(
                name="m",
                source="s",
                tables=[Table(schema="dbo", name="A"), Table(schema="dbo", name="a")],
            )

    @pytest.mark.asyncio
    async def test_remove_missing_returns_false(self, orders_model):
        """Removing an unknown entity returns False."""
        assert not await orders_model.remove_entity(Table(schema="dbo", name="Nope"))

    def test_loaded_entities_eager(self, orders_model):
        """Eager models report every entity as loaded."""
        assert len(orders_model.loaded_entities()) == 4
        assert orders_model.collection_state(EntityKind.TABLE) == "eager"

    @pytest.mark.asyncio
    async def test_lazy_collections_load_independently(self):
        """Only the accessed collection is fetched."""
        fetched: list[EntityKind] = []

        def loader(kind, entities):
            async def load():
                fetched.append(kind)
                return entities
            return load

        model = SemanticModel(name="m", source="s")
        model.enable_lazy_loading({
            EntityKind.TABLE: LazyLoadingProxy(loader(EntityKind.TABLE, [Table(schema="dbo", name="A")])),
            EntityKind.VIEW: LazyLoadingProxy(loader(EntityKind.VIEW, [])),
            EntityKind.STORED_PROCEDURE: LazyLoadingProxy(loader(EntityKind.STORED_PROCEDURE, [])),
        })

        assert model.is_lazy_loading_enabled
        assert model.loaded_entities() == []

        tables = await model.get_tables()

        assert [t.name for t in tables] == ["A"]
        assert fetched == [EntityKind.TABLE]
        assert model.collection_state(EntityKind.TABLE) == "loaded"
        assert model.collection_state(EntityKind.VIEW) == "unloaded"

    def test_enable_lazy_loading_requires_every_kind(self):
        """A proxy is needed for each kind."""
        model = SemanticModel(name="m", source="s")

        async def load():
            return []

        with pytest.raises(ValueError):
            model.enable_lazy_loading({EntityKind.TABLE: LazyLoadingProxy(load)})
