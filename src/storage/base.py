"""
Abstract base class for persistence strategies.

Every backend (local disk, blob store, document store) implements the
same capability set: whole-model save/load/delete/exists/list plus the
entity-level operations the repository needs for lazy loading and
selective saves.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import ClassVar, TypeVar

import structlog

from src.errors import SemanticStoreError, ValidationError
from src.resilience import ExponentialBackoff, retry_transient
from src.semantic_model.model import SemanticModel
from src.semantic_model.schemas import EntityKind, EntityRef, SemanticModelEntity
from src.storage.config import StorageConfig
from src.storage.dto import IndexDocument
from src.storage.serializer import SecureJsonSerializer

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ModelHeader:
    """Model-level fields written into the index document."""

    name: str
    source: str
    description: str | None = None

    @classmethod
    def of(cls, model: SemanticModel) -> "ModelHeader":
        return cls(name=model.name, source=model.source, description=model.description)


class PersistenceStrategy(ABC):
    """
    Storage backend for semantic models.

    All methods are async. Implementations translate their own
    infrastructure errors into the src.errors taxonomy; transient ones are
    retried through run().
    """

    name: ClassVar[str]

    def __init__(
        self,
        config: StorageConfig | None = None,
        serializer: SecureJsonSerializer | None = None,
    ):
        self._config = config or StorageConfig()
        self._serializer = serializer or SecureJsonSerializer(self._config)

    @abstractmethod
    async def save_model(self, model: SemanticModel, location: str) -> None:
        """Persist a whole model atomically, replacing what is stored."""
        ...

    @abstractmethod
    async def load_index(self, location: str) -> IndexDocument:
        """
        Load the model manifest only.

        Raises:
            NotFoundError: If no model is stored at location
            CorruptDataError: If the manifest cannot be parsed
        """
        ...

    @abstractmethod
    async def load_entity(self, location: str, ref: EntityRef) -> SemanticModelEntity:
        """Load one entity referenced by the manifest."""
        ...

    @abstractmethod
    async def commit_changes(
        self,
        location: str,
        header: ModelHeader,
        upserts: list[SemanticModelEntity],
        deletes: list[EntityRef],
    ) -> IndexDocument:
        """
        Write changed entities, remove deleted ones and update the manifest
        as one unit. On failure the previously stored state is kept.

        Returns:
            The manifest after the commit
        """
        ...

    @abstractmethod
    async def delete_model(self, location: str) -> None:
        """Delete a stored model and all its entities."""
        ...

    @abstractmethod
    async def exists(self, location: str) -> bool:
        """Check whether a model is stored at location."""
        ...

    @abstractmethod
    async def list_models(self, root: str) -> list[str]:
        """List the locations of models stored under root."""
        ...

    async def load_entities(
        self, location: str, refs: list[EntityRef]
    ) -> list[SemanticModelEntity]:
        """Load several entities concurrently, preserving order."""
        return list(
            await asyncio.gather(*(self.load_entity(location, ref) for ref in refs))
        )

    async def load_model(self, location: str) -> SemanticModel:
        """Load the manifest and every entity eagerly."""
        index = await self.load_index(location)
        collections = {
            kind: await self.load_entities(location, index.refs_of(kind))
            for kind in EntityKind
        }
        model = SemanticModel(
            name=index.name,
            source=index.source,
            description=index.description,
            tables=collections[EntityKind.TABLE],
            views=collections[EntityKind.VIEW],
            stored_procedures=collections[EntityKind.STORED_PROCEDURE],
        )
        logger.info(
            "Loaded semantic model",
            strategy=self.name,
            model_name=model.name,
            entities=len(index.entities),
        )
        return model

    @staticmethod
    def ensure_unique_references(
        entities: list[SemanticModelEntity],
        reference_of: Callable[[EntityRef], str],
        *,
        operation: str,
        location: str,
    ) -> None:
        """
        Reject a write in which two distinct entities share a storage reference.

        Raises:
            ValidationError: If the references of two entities collide
        """
        seen: dict[str, SemanticModelEntity] = {}
        for entity in entities:
            reference = reference_of(entity.ref)
            other = seen.setdefault(reference, entity)
            if other is not entity and other.ref.identity != entity.ref.identity:
                raise ValidationError(
                    f"{other.kind.value} {other.display_name} and {entity.display_name} "
                    f"map to the same storage reference {reference!r}",
                    operation=operation,
                    location=location,
                )

    async def run(
        self,
        operation: str,
        location: str,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one backend call with timeout and transient-error retries."""
        try:
            return await retry_transient(
                func,
                operation=operation,
                location=location,
                max_retries=self._config.max_retries,
                timeout=self._config.operation_timeout_seconds,
                backoff=ExponentialBackoff(
                    base_delay=self._config.retry_base_delay,
                    max_delay=self._config.retry_max_delay,
                ),
            )
        except SemanticStoreError as e:
            if e.operation is None:
                e.operation = operation
            if e.location is None:
                e.location = location
            raise
