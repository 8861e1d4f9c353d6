"""
Blob-store persistence strategy.

Blob stores have no rename, so atomicity comes from generations:

    orders-db/semanticmodel.json             index (the commit point)
    orders-db/g-3f9c.../tables/dbo.X.json    entity blobs of one generation
    orders-db/.lock                          writer lease

A save uploads entity blobs under a fresh generation prefix, then
uploads the index that references them. Until the index upload succeeds
the previous index (and its blobs) stay authoritative; afterwards blobs
no longer referenced are garbage-collected.
"""

import dataclasses
import json
import time
import uuid
from typing import Protocol, runtime_checkable

import structlog

from src.errors import ConflictError, CorruptDataError, NotFoundError, TransientError
from src.semantic_model.model import SemanticModel
from src.semantic_model.sanitizer import EntityNameSanitizer, PathValidator
from src.semantic_model.schemas import EntityRef, SemanticModelEntity
from src.storage.base import ModelHeader, PersistenceStrategy
from src.storage.config import StorageConfig
from src.storage.dto import (
    IndexDocument,
    from_persisted_dto,
    to_persisted_dto,
    utc_now,
)
from src.storage.serializer import SecureJsonSerializer

logger = structlog.get_logger(__name__)

INDEX_BLOB_NAME = "semanticmodel.json"
LOCK_BLOB_NAME = ".lock"

# Exceptions from a container client that are worth retrying
TRANSIENT_CLIENT_ERRORS = (ConnectionError, TimeoutError, OSError)


def entity_path(ref: EntityRef) -> str:
    """Entity blob path inside a generation."""
    return f"{ref.kind.folder}/{EntityNameSanitizer.entity_file_name(ref.schema, ref.name)}"


@runtime_checkable
class BlobContainerClient(Protocol):
    """
    Minimal async container API the strategy needs.

    The client is built by the caller from its own credentials; the
    strategy never sees connection strings or keys.
    """

    async def upload_blob(self, name: str, data: bytes, *, overwrite: bool = True) -> None:
        """Upload a blob. Raises FileExistsError if overwrite is False and it exists."""
        ...

    async def download_blob(self, name: str) -> bytes | None:
        """Return blob content, or None if the blob does not exist."""
        ...

    async def delete_blob(self, name: str) -> None:
        """Delete a blob; missing blobs are ignored."""
        ...

    async def list_blobs(self, prefix: str) -> list[str]:
        """List blob names starting with prefix."""
        ...

    async def blob_exists(self, name: str) -> bool:
        ...


class BlobStorePersistenceStrategy(PersistenceStrategy):
    """Stores each model as PersistedEntityDto blobs plus an index blob."""

    name = "blob_store"

    def __init__(
        self,
        container: BlobContainerClient,
        config: StorageConfig | None = None,
        serializer: SecureJsonSerializer | None = None,
    ):
        super().__init__(config, serializer)
        self._container = container

    def _prefix(self, location: str, operation: str) -> str:
        return PathValidator.validate_location(location, operation=operation)

    async def _call(self, operation: str, location: str, func):
        """Run a container call, mapping client I/O errors to TransientError."""

        async def attempt():
            try:
                return await func()
            except (FileExistsError, FileNotFoundError):
                raise
            except TRANSIENT_CLIENT_ERRORS as e:
                raise TransientError(
                    f"Blob operation failed: {e}", operation=operation, location=location
                ) from e

        return await self.run(operation, location, attempt)

    # Locking

    async def _acquire_lock(self, prefix: str, operation: str) -> str:
        lock_name = f"{prefix}/{LOCK_BLOB_NAME}"
        payload = json.dumps({"owner": uuid.uuid4().hex, "acquired": time.time()}).encode()
        for attempt in range(2):
            try:
                await self._call(
                    operation,
                    prefix,
                    lambda: self._container.upload_blob(lock_name, payload, overwrite=False),
                )
                return lock_name
            except FileExistsError:
                if attempt == 0 and await self._lock_is_stale(lock_name):
                    logger.warning("Breaking stale blob lease", lock=lock_name)
                    await self._container.delete_blob(lock_name)
                    continue
                raise ConflictError(
                    "Model is locked by another writer", operation=operation, location=prefix
                ) from None
        raise ConflictError("Model is locked by another writer", operation=operation, location=prefix)

    async def _lock_is_stale(self, lock_name: str) -> bool:
        content = await self._container.download_blob(lock_name)
        if content is None:
            return True
        try:
            acquired = float(json.loads(content)["acquired"])
        except (ValueError, KeyError, TypeError):
            return True
        return time.time() - acquired > self._config.lock_stale_after_seconds

    async def _release_lock(self, lock_name: str) -> None:
        try:
            await self._container.delete_blob(lock_name)
        except TRANSIENT_CLIENT_ERRORS as e:
            logger.warning("Failed to release blob lease", lock=lock_name, error=str(e))

    # Save

    def _entity_blob(self, prefix: str, generation: str, ref: EntityRef) -> tuple[str, str]:
        """Return (reference relative to prefix, full blob name)."""
        reference = f"g-{generation}/{entity_path(ref)}"
        return reference, f"{prefix}/{reference}"

    async def _upload_generation(
        self, prefix: str, entities: list[SemanticModelEntity], operation: str
    ) -> tuple[list[EntityRef], list[str]]:
        self.ensure_unique_references(
            entities, entity_path, operation=operation, location=prefix
        )
        generation = uuid.uuid4().hex[:12]
        refs: list[EntityRef] = []
        uploaded: list[str] = []
        try:
            for entity in entities:
                reference, blob_name = self._entity_blob(prefix, generation, entity.ref)
                data = self._serializer.serialize(
                    to_persisted_dto(entity), location=blob_name
                ).encode("utf-8")
                await self._call(
                    operation, blob_name, lambda: self._container.upload_blob(blob_name, data)
                )
                uploaded.append(blob_name)
                refs.append(dataclasses.replace(entity.ref, reference=reference))
        except BaseException:
            await self._discard(uploaded)
            raise
        return refs, uploaded

    async def _commit_index(
        self, prefix: str, index: IndexDocument, uploaded: list[str], operation: str
    ) -> None:
        index_name = f"{prefix}/{INDEX_BLOB_NAME}"
        data = self._serializer.serialize(index.to_dict(), location=index_name).encode("utf-8")
        try:
            await self._call(
                operation, index_name, lambda: self._container.upload_blob(index_name, data)
            )
        except BaseException:
            await self._discard(uploaded)
            raise
        await self._collect_garbage(prefix, index)

    async def _discard(self, blob_names: list[str]) -> None:
        for blob_name in blob_names:
            try:
                await self._container.delete_blob(blob_name)
            except TRANSIENT_CLIENT_ERRORS as e:
                logger.warning("Failed to discard staged blob", blob=blob_name, error=str(e))

    async def _collect_garbage(self, prefix: str, index: IndexDocument) -> None:
        """Delete entity blobs the committed index no longer references."""
        keep = {f"{prefix}/{INDEX_BLOB_NAME}", f"{prefix}/{LOCK_BLOB_NAME}"}
        keep.update(f"{prefix}/{ref.reference}" for ref in index.entities if ref.reference)
        try:
            names = await self._container.list_blobs(f"{prefix}/")
        except TRANSIENT_CLIENT_ERRORS as e:
            logger.warning("Skipping blob garbage collection", prefix=prefix, error=str(e))
            return
        stale = [name for name in names if name not in keep and "/g-" in name[len(prefix):]]
        await self._discard(stale)

    async def save_model(self, model: SemanticModel, location: str) -> None:
        prefix = self._prefix(location, "save_model")
        entities = await model.get_all_entities()

        lock_name = await self._acquire_lock(prefix, "save_model")
        try:
            created = utc_now()
            try:
                created = (await self.load_index(location)).created_utc
            except (NotFoundError, CorruptDataError):
                pass

            refs, uploaded = await self._upload_generation(prefix, entities, "save_model")
            header = ModelHeader.of(model)
            index = IndexDocument(
                name=header.name,
                source=header.source,
                description=header.description,
                entities=refs,
                created_utc=created,
            )
            await self._commit_index(prefix, index, uploaded, "save_model")
        finally:
            await self._release_lock(lock_name)

        logger.info(
            "Saved semantic model",
            strategy=self.name,
            model_name=model.name,
            location=prefix,
            entities=len(entities),
        )

    async def commit_changes(
        self,
        location: str,
        header: ModelHeader,
        upserts: list[SemanticModelEntity],
        deletes: list[EntityRef],
    ) -> IndexDocument:
        prefix = self._prefix(location, "commit_changes")

        lock_name = await self._acquire_lock(prefix, "commit_changes")
        try:
            try:
                index = await self.load_index(location)
            except NotFoundError:
                index = IndexDocument(name=header.name, source=header.source)

            refs, uploaded = await self._upload_generation(prefix, upserts, "commit_changes")
            new_index = dataclasses.replace(
                index.apply(refs, deletes),
                name=header.name,
                source=header.source,
                description=header.description,
            )
            await self._commit_index(prefix, new_index, uploaded, "commit_changes")
        finally:
            await self._release_lock(lock_name)

        logger.info(
            "Committed entity changes",
            strategy=self.name,
            model_name=header.name,
            upserts=len(upserts),
            deletes=len(deletes),
        )
        return new_index

    # Load

    async def _download(self, blob_name: str, operation: str) -> bytes:
        content = await self._call(
            operation, blob_name, lambda: self._container.download_blob(blob_name)
        )
        if content is None:
            raise NotFoundError("Blob not found", operation=operation, location=blob_name)
        return content

    async def load_index(self, location: str) -> IndexDocument:
        prefix = self._prefix(location, "load_index")
        index_name = f"{prefix}/{INDEX_BLOB_NAME}"
        content = await self._download(index_name, "load_index")
        data = self._serializer.deserialize(content, location=index_name)
        return IndexDocument.from_dict(data, location=index_name)

    async def load_entity(self, location: str, ref: EntityRef) -> SemanticModelEntity:
        prefix = self._prefix(location, "load_entity")
        if not ref.reference:
            raise NotFoundError(
                f"No stored reference for {ref.schema}.{ref.name}",
                operation="load_entity",
                location=prefix,
            )
        blob_name = f"{prefix}/{PathValidator.validate_location(ref.reference)}"
        content = await self._download(blob_name, "load_entity")
        payload = self._serializer.deserialize(content, location=blob_name)
        return from_persisted_dto(ref.kind, payload, location=blob_name)

    # Delete / exists / list

    async def delete_model(self, location: str) -> None:
        prefix = self._prefix(location, "delete_model")
        if not await self.exists(location):
            raise NotFoundError("Model not found", operation="delete_model", location=prefix)

        lock_name = await self._acquire_lock(prefix, "delete_model")
        try:
            index_name = f"{prefix}/{INDEX_BLOB_NAME}"
            # Index first: once it is gone the model no longer exists
            await self._call("delete_model", index_name, lambda: self._container.delete_blob(index_name))
            names = await self._call(
                "delete_model", prefix, lambda: self._container.list_blobs(f"{prefix}/")
            )
            await self._discard([name for name in names if name != lock_name])
        finally:
            await self._release_lock(lock_name)
        logger.info("Deleted semantic model", strategy=self.name, location=prefix)

    async def exists(self, location: str) -> bool:
        prefix = self._prefix(location, "exists")
        index_name = f"{prefix}/{INDEX_BLOB_NAME}"
        return await self._call(
            "exists", index_name, lambda: self._container.blob_exists(index_name)
        )

    async def list_models(self, root: str) -> list[str]:
        prefix = PathValidator.validate_location(root, operation="list_models") if root else ""
        search = f"{prefix}/" if prefix else ""
        names = await self._call(
            "list_models", prefix or "/", lambda: self._container.list_blobs(search)
        )
        suffix = f"/{INDEX_BLOB_NAME}"
        return sorted(name[: -len(suffix)] for name in names if name.endswith(suffix))
