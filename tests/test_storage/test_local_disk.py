"""Tests for the local-disk persistence strategy."""

import errno
import json
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from src.errors import (
    ConflictError,
    CorruptDataError,
    NotFoundError,
    StorageError,
    TransientError,
    ValidationError,
)
from src.semantic_model.model import SemanticModel
from src.semantic_model.schemas import EntityKind, Table
from src.storage.base import ModelHeader
from src.storage.local_disk import INDEX_FILE_NAME, LocalDiskPersistenceStrategy


class TestLocalDiskSave:
    """Tests for whole-model saves."""

    @pytest.mark.asyncio
    async def test_directory_layout(self, local_strategy, orders_model, tmp_path):
        """One index file plus one file per entity, grouped by kind."""
        location = str(tmp_path / "orders-db")

        await local_strategy.save_model(orders_model, location)

        root = tmp_path / "orders-db"
        assert (root / INDEX_FILE_NAME).is_file()
        assert (root / "tables" / "dbo.Customer.json").is_file()
        assert (root / "tables" / "dbo.Order.json").is_file()
        assert (root / "views" / "sales.ActiveCustomers.json").is_file()
        assert (root / "storedprocedures" / "dbo.usp_PlaceOrder.json").is_file()
        assert not (tmp_path / "orders-db.lock").exists()

    @pytest.mark.asyncio
    async def test_round_trip_with_embedding(
        self, local_strategy, orders_model, sample_envelope, tmp_path
    ):
        """A saved model loads back with entities and embeddings."""
        location = str(tmp_path / "orders-db")
        customer = await orders_model.find_table("dbo", "Customer")
        customer.embedding = sample_envelope

        await local_strategy.save_model(orders_model, location)
        loaded = await local_strategy.load_model(location)

        assert loaded.name == "orders-db"
        assert loaded.description == "Order processing database"
        assert len(await loaded.get_all_entities()) == 4
        loaded_customer = await loaded.find_table("dbo", "Customer")
        assert loaded_customer.embedding.vector == sample_envelope.vector
        assert (await loaded.find_table("dbo", "Order")).embedding is None

    @pytest.mark.asyncio
    async def test_resave_replaces_removed_entities(self, local_strategy, orders_model, tmp_path):
        """Entities dropped from the model disappear on the next save."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)

        order = await orders_model.find_table("dbo", "Order")
        await orders_model.remove_entity(order)
        await local_strategy.save_model(orders_model, location)

        assert not (tmp_path / "orders-db" / "tables" / "dbo.Order.json").exists()
        assert not [p for p in tmp_path.iterdir() if p.name.startswith("semanticmodel_temp_")]

    @pytest.mark.asyncio
    async def test_created_utc_preserved(self, local_strategy, orders_model, tmp_path):
        """Re-saving keeps the original creation time."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)
        created = (await local_strategy.load_index(location)).created_utc

        await local_strategy.save_model(orders_model, location)

        assert (await local_strategy.load_index(location)).created_utc == created


    @pytest.mark.asyncio
    async def test_colliding_file_names_rejected(self, local_strategy, tmp_path):
        """Reserved-name escaping must not fold two entities into one file."""
        model = SemanticModel(
            name="orders-db",
            source="s",
            tables=[Table(schema="dbo", name="CON"), Table(schema="dbo", name="_CON")],
        )

        with pytest.raises(ValidationError, match="same storage reference"):
            await local_strategy.save_model(model, str(tmp_path / "orders-db"))

        assert not (tmp_path / "orders-db").exists()


class TestLocalDiskCommit:
    """Tests for entity-level commits."""

    @pytest.mark.asyncio
    async def test_commit_upsert_and_delete(self, local_strategy, orders_model, tmp_path):
        """Only the touched files change and the index follows."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)
        order = await orders_model.find_table("dbo", "Order")
        invoice = Table(schema="dbo", name="Invoice")

        index = await local_strategy.commit_changes(
            location, ModelHeader.of(orders_model), [invoice], [order.ref]
        )

        root = tmp_path / "orders-db"
        assert (root / "tables" / "dbo.Invoice.json").is_file()
        assert not (root / "tables" / "dbo.Order.json").exists()
        names = sorted(ref.name for ref in index.refs_of(EntityKind.TABLE))
        assert names == ["Customer", "Invoice"]

    @pytest.mark.asyncio
    async def test_failed_commit_restores_files(self, local_strategy, orders_model, tmp_path):
        """A failed commit leaves the previous files in place."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)
        customer = await orders_model.find_table("dbo", "Customer")
        before = (tmp_path / "orders-db" / "tables" / "dbo.Customer.json").read_text()
        customer.description = "changed"

        real_replace = os.replace

        def failing_replace(src, dst):
            # Fail when the staged index is moved into place, not on restore
            if str(dst).endswith(INDEX_FILE_NAME) and str(src).endswith(".json"):
                raise OSError("disk full")
            return real_replace(src, dst)

        with patch("src.storage.local_disk.os.replace", side_effect=failing_replace):
            with pytest.raises(StorageError):
                await local_strategy.commit_changes(
                    location, ModelHeader.of(orders_model), [customer], []
                )

        after = (tmp_path / "orders-db" / "tables" / "dbo.Customer.json").read_text()
        assert after == before


class TestLocalDiskFailures:
    """Tests for how OS errors surface and which are retried."""

    @pytest.mark.asyncio
    async def test_permission_denied_swap_is_not_retried(
        self, local_strategy, orders_model, tmp_path
    ):
        """A refused rename fails the save at once with StorageError."""
        location = str(tmp_path / "orders-db")
        denied = PermissionError(errno.EACCES, "Permission denied")

        with patch("src.storage.local_disk.os.replace", side_effect=denied) as replace:
            with pytest.raises(StorageError) as exc_info:
                await local_strategy.save_model(orders_model, location)

        assert replace.call_count == 1
        assert exc_info.value.operation == "save_model"
        assert not (tmp_path / "orders-db").exists()
        assert [p.name for p in tmp_path.iterdir()] == []

    @pytest.mark.asyncio
    async def test_busy_swap_runs_once(self, local_strategy, orders_model, tmp_path):
        """A busy rename is reported as transient but the swap is not re-run."""
        location = str(tmp_path / "orders-db")
        busy = OSError(errno.EBUSY, "Device or resource busy")

        with patch("src.storage.local_disk.os.replace", side_effect=busy) as replace:
            with pytest.raises(TransientError):
                await local_strategy.save_model(orders_model, location)

        assert replace.call_count == 1

    @pytest.mark.asyncio
    async def test_unreadable_file_is_not_retried(self, local_strategy, orders_model, tmp_path):
        """A permission error on read is permanent."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)
        denied = PermissionError(errno.EACCES, "Permission denied")

        with patch.object(Path, "read_text", side_effect=denied) as read_text:
            with pytest.raises(StorageError):
                await local_strategy.load_index(location)

        assert read_text.call_count == 1

    @pytest.mark.asyncio
    async def test_interrupted_read_is_retried(self, local_strategy, orders_model, tmp_path):
        """A read that fails with EAGAIN succeeds on the next attempt."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)
        real_read_text = Path.read_text
        calls = []

        def flaky_read_text(self, *args, **kwargs):
            calls.append(self)
            if len(calls) == 1:
                raise BlockingIOError(errno.EAGAIN, "Resource temporarily unavailable")
            return real_read_text(self, *args, **kwargs)

        with patch.object(Path, "read_text", flaky_read_text):
            index = await local_strategy.load_index(location)

        assert index.name == "orders-db"
        assert len(calls) == 2


class TestLocalDiskLoad:
    """Tests for loading and errors."""

    @pytest.mark.asyncio
    async def test_missing_model(self, local_strategy, tmp_path):
        """Loading a missing model raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await local_strategy.load_model(str(tmp_path / "missing"))

    @pytest.mark.asyncio
    async def test_corrupt_index(self, local_strategy, tmp_path):
        """An unparseable index raises CorruptDataError."""
        root = tmp_path / "broken"
        root.mkdir()
        (root / INDEX_FILE_NAME).write_text("{oops", encoding="utf-8")

        with pytest.raises(CorruptDataError):
            await local_strategy.load_index(str(root))

    @pytest.mark.asyncio
    async def test_legacy_entity_file(self, local_strategy, tmp_path):
        """Entity files without the data wrapper still load."""
        root = tmp_path / "legacy"
        (root / "tables").mkdir(parents=True)
        (root / INDEX_FILE_NAME).write_text(json.dumps({
            "name": "legacy",
            "source": "s",
            "entities": [{"kind": "table", "schema": "dbo", "name": "Old"}],
        }))
        (root / "tables" / "dbo.Old.json").write_text(json.dumps({"schema": "dbo", "name": "Old"}))

        model = await local_strategy.load_model(str(root))

        assert [t.name for t in await model.get_tables()] == ["Old"]


class TestLocalDiskLocking:
    """Tests for the writer lock file."""

    @pytest.mark.asyncio
    async def test_held_lock_conflicts(self, local_strategy, orders_model, tmp_path):
        """A fresh lock held by another writer raises ConflictError."""
        (tmp_path / "orders-db.lock").write_text("{}")

        with pytest.raises(ConflictError):
            await local_strategy.save_model(orders_model, str(tmp_path / "orders-db"))

    @pytest.mark.asyncio
    async def test_stale_lock_broken(self, storage_config, orders_model, tmp_path):
        """Locks older than lock_stale_after_seconds are broken."""
        strategy = LocalDiskPersistenceStrategy(
            storage_config.model_copy(update={"lock_stale_after_seconds": 1})
        )
        lock = tmp_path / "orders-db.lock"
        lock.write_text("{}")
        old = time.time() - 60
        os.utime(lock, (old, old))

        await strategy.save_model(orders_model, str(tmp_path / "orders-db"))

        assert await strategy.exists(str(tmp_path / "orders-db"))
        assert not lock.exists()


class TestLocalDiskManagement:
    """Tests for delete / exists / list."""

    @pytest.mark.asyncio
    async def test_delete_and_exists(self, local_strategy, orders_model, tmp_path):
        """Deleted models no longer exist; deleting again is NotFoundError."""
        location = str(tmp_path / "orders-db")
        await local_strategy.save_model(orders_model, location)
        assert await local_strategy.exists(location)

        await local_strategy.delete_model(location)

        assert not await local_strategy.exists(location)
        with pytest.raises(NotFoundError):
            await local_strategy.delete_model(location)

    @pytest.mark.asyncio
    async def test_list_models(self, local_strategy, model_factory, tmp_path):
        """Only directories holding an index are listed."""
        await local_strategy.save_model(model_factory(), str(tmp_path / "a"))
        await local_strategy.save_model(model_factory(), str(tmp_path / "b"))
        (tmp_path / "not-a-model").mkdir()

        models = await local_strategy.list_models(str(tmp_path))

        assert [os.path.basename(m) for m in models] == ["a", "b"]
