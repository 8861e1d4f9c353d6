"""
Local-disk persistence strategy.

Layout of a model directory:

    orders-db/
        semanticmodel.json          index document
        tables/dbo.Customer.json    one PersistedEntityDto per entity
        views/...
        storedprocedures/...

Whole-model saves are staged into a sibling `semanticmodel_temp_*`
directory and swapped in with renames; entity-level commits replace
individual files and restore backups if anything fails. A sibling
`<model>.lock` file created with O_EXCL gives one writer at a time.

File swaps run exactly once. OS errors become TransientError only for
errno values that can clear on their own (EAGAIN, EBUSY, EINTR,
ETIMEDOUT); everything else is a StorageError. Only reads are retried.
"""

import asyncio
import dataclasses
import errno
import json
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog

from src.errors import (
    ConflictError,
    CorruptDataError,
    NotFoundError,
    SemanticStoreError,
    StorageError,
    TransientError,
)
from src.semantic_model.model import SemanticModel
from src.semantic_model.sanitizer import EntityNameSanitizer, PathValidator
from src.semantic_model.schemas import EntityRef, SemanticModelEntity
from src.storage.base import ModelHeader, PersistenceStrategy
from src.storage.dto import (
    IndexDocument,
    from_persisted_dto,
    to_persisted_dto,
    utc_now,
)

logger = structlog.get_logger(__name__)

INDEX_FILE_NAME = "semanticmodel.json"
TEMP_DIRECTORY_PREFIX = "semanticmodel_temp_"
LOCK_SUFFIX = ".lock"

# OS errors worth another attempt; anything else (EACCES, ENOSPC, EROFS...) is permanent
TRANSIENT_ERRNOS = frozenset({errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ETIMEDOUT})


def os_failure(e: OSError, message: str, *, operation: str, location: str) -> SemanticStoreError:
    """Map an OSError to TransientError or StorageError by errno."""
    error_type = TransientError if e.errno in TRANSIENT_ERRNOS else StorageError
    return error_type(f"{message}: {e.strerror or e}", operation=operation, location=location)


def entity_reference(ref: EntityRef) -> str:
    """Relative path of an entity file inside the model directory."""
    return f"{ref.kind.folder}/{EntityNameSanitizer.entity_file_name(ref.schema, ref.name)}"


class LocalDiskPersistenceStrategy(PersistenceStrategy):
    """
    Stores each model as a directory of indented JSON files.

    File I/O runs in worker threads (asyncio.to_thread) so the event loop
    never blocks on disk.
    """

    name = "local_disk"

    def _model_dir(self, location: str, operation: str) -> Path:
        return PathValidator.validate_directory(location, operation=operation)

    # Locking

    @asynccontextmanager
    async def _locked(self, model_dir: Path, operation: str) -> AsyncIterator[None]:
        lock_path = model_dir.parent / f"{model_dir.name}{LOCK_SUFFIX}"
        await asyncio.to_thread(self._acquire_lock, lock_path, operation)
        try:
            yield
        finally:
            await asyncio.to_thread(lock_path.unlink, True)

    def _acquire_lock(self, lock_path: Path, operation: str) -> None:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if attempt == 0 and self._lock_is_stale(lock_path):
                    logger.warning("Breaking stale lock", lock=str(lock_path))
                    lock_path.unlink(missing_ok=True)
                    continue
                raise ConflictError(
                    "Model is locked by another writer",
                    operation=operation,
                    location=str(lock_path.with_suffix("")),
                ) from None
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"pid": os.getpid(), "acquired": time.time()}, f)
            return

    def _lock_is_stale(self, lock_path: Path) -> bool:
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self._config.lock_stale_after_seconds

    # Save

    async def save_model(self, model: SemanticModel, location: str) -> None:
        model_dir = self._model_dir(location, "save_model")
        entities = await model.get_all_entities()
        self.ensure_unique_references(
            entities, entity_reference, operation="save_model", location=str(model_dir)
        )

        files: dict[str, str] = {}
        refs: list[EntityRef] = []
        for entity in entities:
            reference = entity_reference(entity.ref)
            files[reference] = self._serializer.serialize(
                to_persisted_dto(entity), location=str(model_dir / reference)
            )
            refs.append(dataclasses.replace(entity.ref, reference=reference))

        async with self._locked(model_dir, "save_model"):
            created = utc_now()
            if await self.exists(location):
                try:
                    created = (await self.load_index(location)).created_utc
                except CorruptDataError as e:
                    logger.warning("Previous index unreadable, resetting createdUtc", error=str(e))

            header = ModelHeader.of(model)
            index = IndexDocument(
                name=header.name,
                source=header.source,
                description=header.description,
                entities=refs,
                created_utc=created,
            )
            files[INDEX_FILE_NAME] = self._serializer.serialize(
                index.to_dict(), location=str(model_dir)
            )

            # Swaps run once with no timeout: a worker thread cannot be cancelled,
            # so a second attempt would race the first
            await asyncio.to_thread(self._write_model_tree, model_dir, files)

        logger.info(
            "Saved semantic model",
            strategy=self.name,
            model_name=model.name,
            location=str(model_dir),
            entities=len(refs),
        )

    def _write_model_tree(self, model_dir: Path, files: dict[str, str]) -> None:
        """Stage every file in a temp directory, then swap it into place."""
        staging = model_dir.parent / f"{TEMP_DIRECTORY_PREFIX}{uuid.uuid4().hex}"
        backup: Path | None = None
        try:
            for reference, text in files.items():
                path = staging / reference
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(text, encoding="utf-8")

            if model_dir.exists():
                backup = model_dir.parent / f"{TEMP_DIRECTORY_PREFIX}{uuid.uuid4().hex}_backup"
                os.replace(model_dir, backup)
            try:
                os.replace(staging, model_dir)
            except OSError:
                if backup is not None:
                    os.replace(backup, model_dir)
                    backup = None
                raise
        except OSError as e:
            raise os_failure(
                e, "Failed to write model directory", operation="save_model", location=str(model_dir)
            ) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)
            if backup is not None:
                shutil.rmtree(backup, ignore_errors=True)

    async def commit_changes(
        self,
        location: str,
        header: ModelHeader,
        upserts: list[SemanticModelEntity],
        deletes: list[EntityRef],
    ) -> IndexDocument:
        model_dir = self._model_dir(location, "commit_changes")
        self.ensure_unique_references(
            upserts, entity_reference, operation="commit_changes", location=str(model_dir)
        )

        async with self._locked(model_dir, "commit_changes"):
            try:
                index = await self.load_index(location)
            except NotFoundError:
                index = IndexDocument(name=header.name, source=header.source)

            writes: dict[str, str] = {}
            upsert_refs: list[EntityRef] = []
            for entity in upserts:
                reference = entity_reference(entity.ref)
                writes[reference] = self._serializer.serialize(
                    to_persisted_dto(entity), location=str(model_dir / reference)
                )
                upsert_refs.append(dataclasses.replace(entity.ref, reference=reference))

            removals: list[str] = []
            for ref in deletes:
                stored = index.find(ref)
                reference = (stored.reference if stored else None) or entity_reference(ref)
                if reference not in writes:
                    removals.append(reference)

            new_index = dataclasses.replace(
                index.apply(upsert_refs, deletes),
                name=header.name,
                source=header.source,
                description=header.description,
            )
            writes[INDEX_FILE_NAME] = self._serializer.serialize(
                new_index.to_dict(), location=str(model_dir)
            )

            await asyncio.to_thread(self._apply_files, model_dir, writes, removals)

        logger.info(
            "Committed entity changes",
            strategy=self.name,
            model_name=header.name,
            upserts=len(upserts),
            deletes=len(removals),
        )
        return new_index

    def _apply_files(self, model_dir: Path, writes: dict[str, str], removals: list[str]) -> None:
        """Replace/remove individual files, restoring backups on failure."""
        staging = model_dir / f".{TEMP_DIRECTORY_PREFIX}{uuid.uuid4().hex}"
        backups: list[tuple[Path, Path]] = []
        created: list[Path] = []
        try:
            staging.mkdir(parents=True)
            staged: list[tuple[Path, Path]] = []
            for i, (reference, text) in enumerate(writes.items()):
                tmp = staging / f"{i}.json"
                tmp.write_text(text, encoding="utf-8")
                final = PathValidator.ensure_within(model_dir, model_dir / reference)
                staged.append((tmp, final))

            for tmp, final in staged:
                final.parent.mkdir(parents=True, exist_ok=True)
                if final.exists():
                    bak = staging / f"{len(backups)}.bak"
                    os.replace(final, bak)
                    backups.append((bak, final))
                else:
                    created.append(final)
                os.replace(tmp, final)

            for reference in removals:
                final = PathValidator.ensure_within(model_dir, model_dir / reference)
                if final.exists():
                    bak = staging / f"{len(backups)}.bak"
                    os.replace(final, bak)
                    backups.append((bak, final))
        except OSError as e:
            for path in created:
                path.unlink(missing_ok=True)
            for bak, final in reversed(backups):
                os.replace(bak, final)
            raise os_failure(
                e, "Failed to commit entity files", operation="commit_changes", location=str(model_dir)
            ) from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    # Load

    async def load_index(self, location: str) -> IndexDocument:
        model_dir = self._model_dir(location, "load_index")
        path = model_dir / INDEX_FILE_NAME
        text = await self.run(
            "load_index", str(model_dir), lambda: asyncio.to_thread(self._read_text, path)
        )
        data = self._serializer.deserialize(text, location=str(path))
        return IndexDocument.from_dict(data, location=str(path))

    async def load_entity(self, location: str, ref: EntityRef) -> SemanticModelEntity:
        model_dir = self._model_dir(location, "load_entity")
        path = PathValidator.ensure_within(
            model_dir,
            model_dir / (ref.reference or entity_reference(ref)),
            operation="load_entity",
        )
        text = await self.run(
            "load_entity", str(path), lambda: asyncio.to_thread(self._read_text, path)
        )
        payload = self._serializer.deserialize(text, location=str(path))
        return from_persisted_dto(ref.kind, payload, location=str(path))

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(
                "Stored file not found", operation="read", location=str(path)
            ) from None
        except OSError as e:
            raise os_failure(e, "Failed to read file", operation="read", location=str(path)) from e

    # Delete / exists / list

    async def delete_model(self, location: str) -> None:
        model_dir = self._model_dir(location, "delete_model")
        if not await self.exists(location):
            raise NotFoundError("Model not found", operation="delete_model", location=str(model_dir))

        async with self._locked(model_dir, "delete_model"):
            await asyncio.to_thread(self._remove_tree, model_dir)
        logger.info("Deleted semantic model", strategy=self.name, location=str(model_dir))

    def _remove_tree(self, model_dir: Path) -> None:
        # Rename first so the model disappears in one step
        doomed = model_dir.parent / f"{TEMP_DIRECTORY_PREFIX}{uuid.uuid4().hex}_deleted"
        try:
            os.replace(model_dir, doomed)
        except OSError as e:
            raise os_failure(
                e, "Failed to delete model", operation="delete_model", location=str(model_dir)
            ) from e
        shutil.rmtree(doomed, ignore_errors=True)

    async def exists(self, location: str) -> bool:
        model_dir = self._model_dir(location, "exists")
        return await asyncio.to_thread((model_dir / INDEX_FILE_NAME).is_file)

    async def list_models(self, root: str) -> list[str]:
        root_dir = self._model_dir(root, "list_models")

        def scan() -> list[str]:
            if not root_dir.is_dir():
                return []
            return [
                str(child)
                for child in sorted(root_dir.iterdir())
                if child.is_dir()
                and not child.name.startswith(TEMP_DIRECTORY_PREFIX)
                and (child / INDEX_FILE_NAME).is_file()
            ]

        return await asyncio.to_thread(scan)
