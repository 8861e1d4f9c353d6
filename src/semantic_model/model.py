"""
SemanticModel aggregate root.

Holds the tables, views and stored procedures of one database. Each
collection is either an eager list or a LazyLoadingProxy; accessors and
lookups work the same in both modes, so callers never need to know which
one is active.
"""

from collections.abc import Iterable
from typing import Any

import structlog

from src.errors import ValidationError
from src.semantic_model.change_tracking import ChangeTracker
from src.semantic_model.lazy import LazyLoadingProxy
from src.semantic_model.schemas import (
    EntityKind,
    EntityRef,
    SemanticModelEntity,
    StoredProcedure,
    Table,
    View,
)

logger = structlog.get_logger(__name__)

_MODEL_FIELDS = frozenset({"name", "source", "description"})


class SemanticModel:
    """
    A database schema plus AI-generated descriptions.

    Usage:
        model = SemanticModel("orders-db", source="sqlserver://orders")
        await model.add_entity(Table(schema="dbo", name="Customer"))
        customer = await model.find_table("dbo", "customer")
    """

    def __init__(
        self,
        name: str,
        source: str,
        description: str | None = None,
        tables: Iterable[Table] | None = None,
        views: Iterable[View] | None = None,
        stored_procedures: Iterable[StoredProcedure] | None = None,
    ):
        self._tracker: ChangeTracker | None = None
        self.name = name
        self.source = source
        self.description = description
        self._collections: dict[EntityKind, list[SemanticModelEntity]] = {
            EntityKind.TABLE: list(tables or []),
            EntityKind.VIEW: list(views or []),
            EntityKind.STORED_PROCEDURE: list(stored_procedures or []),
        }
        self._proxies: dict[EntityKind, LazyLoadingProxy[SemanticModelEntity]] | None = None
        self._observed: set[EntityKind] = set()

        for kind, entities in self._collections.items():
            seen: set[tuple] = set()
            for entity in entities:
                self._check_kind(entity, kind)
                if entity.ref.identity in seen:
                    raise ValidationError(
                        f"Duplicate {kind.value} {entity.display_name} in model {name}"
                    )
                seen.add(entity.ref.identity)

    def __setattr__(self, name: str, value: Any) -> None:
        object.__setattr__(self, name, value)
        if name in _MODEL_FIELDS:
            tracker = self.__dict__.get("_tracker")
            if tracker is not None:
                tracker.mark_model_modified()

    def __repr__(self) -> str:
        mode = "lazy" if self.is_lazy_loading_enabled else "eager"
        return f"SemanticModel(name={self.name!r}, mode={mode})"

    # Collection access

    @property
    def is_lazy_loading_enabled(self) -> bool:
        return self._proxies is not None

    async def get_entities(self, kind: EntityKind) -> list[SemanticModelEntity]:
        """Return one collection, loading it first if it is lazy."""
        if self._proxies is not None:
            entities = await self._proxies[kind].get()
        else:
            entities = self._collections[kind]
        if self._tracker is not None and kind not in self._observed:
            for entity in entities:
                entity.attach_observer(self._on_entity_changed)
            self._observed.add(kind)
        return entities

    async def get_tables(self) -> list[Table]:
        return await self.get_entities(EntityKind.TABLE)  # type: ignore[return-value]

    async def get_views(self) -> list[View]:
        return await self.get_entities(EntityKind.VIEW)  # type: ignore[return-value]

    async def get_stored_procedures(self) -> list[StoredProcedure]:
        return await self.get_entities(EntityKind.STORED_PROCEDURE)  # type: ignore[return-value]

    async def get_all_entities(self) -> list[SemanticModelEntity]:
        """All entities, tables first, then views, then stored procedures."""
        result: list[SemanticModelEntity] = []
        for kind in EntityKind:
            result.extend(await self.get_entities(kind))
        return result

    def loaded_entities(self) -> list[SemanticModelEntity]:
        """Entities already in memory, without triggering any lazy load."""
        result: list[SemanticModelEntity] = []
        for kind in EntityKind:
            if self._proxies is None:
                result.extend(self._collections[kind])
            elif self._proxies[kind].is_loaded:
                result.extend(self._proxies[kind].value or [])
        return result

    def collection_state(self, kind: EntityKind) -> str:
        """'eager' or the proxy state of a collection."""
        if self._proxies is None:
            return "eager"
        return self._proxies[kind].state.value

    # Lookups

    async def find_entity(
        self, kind: EntityKind, schema: str, name: str
    ) -> SemanticModelEntity | None:
        """Case-insensitive lookup by schema and name."""
        identity = (kind, schema.lower(), name.lower())
        for entity in await self.get_entities(kind):
            if entity.ref.identity == identity:
                return entity
        return None

    async def find_table(self, schema: str, name: str) -> Table | None:
        return await self.find_entity(EntityKind.TABLE, schema, name)  # type: ignore[return-value]

    async def find_view(self, schema: str, name: str) -> View | None:
        return await self.find_entity(EntityKind.VIEW, schema, name)  # type: ignore[return-value]

    async def find_stored_procedure(self, schema: str, name: str) -> StoredProcedure | None:
        return await self.find_entity(  # type: ignore[return-value]
            EntityKind.STORED_PROCEDURE, schema, name
        )

    # Mutation

    async def add_entity(self, entity: SemanticModelEntity) -> None:
        """
        Add an entity to its collection.

        Raises:
            ValidationError: If an entity with the same kind, schema and
                name already exists
        """
        entities = await self.get_entities(entity.kind)
        if any(e.ref.identity == entity.ref.identity for e in entities):
            raise ValidationError(
                f"Duplicate {entity.kind.value} {entity.display_name} in model {self.name}"
            )
        entities.append(entity)
        if self._tracker is not None:
            entity.attach_observer(self._on_entity_changed)
            self._tracker.mark_added(entity)

    async def remove_entity(self, entity: SemanticModelEntity) -> bool:
        """Remove an entity. Returns False if it was not in the model."""
        entities = await self.get_entities(entity.kind)
        for i, existing in enumerate(entities):
            if existing is entity or existing.ref.identity == entity.ref.identity:
                removed = entities.pop(i)
                removed.attach_observer(None)
                if self._tracker is not None:
                    self._tracker.mark_removed(removed)
                return True
        return False

    # Lazy loading

    def enable_lazy_loading(
        self, proxies: dict[EntityKind, LazyLoadingProxy[SemanticModelEntity]]
    ) -> None:
        """Replace the eager collections with lazy proxies."""
        missing = set(EntityKind) - set(proxies)
        if missing:
            raise ValueError(f"Missing lazy proxies for: {sorted(k.value for k in missing)}")
        self._proxies = dict(proxies)
        self._collections = {kind: [] for kind in EntityKind}
        self._observed.clear()
        logger.debug("Lazy loading enabled", model_name=self.name)

    # Change tracking

    @property
    def change_tracker(self) -> ChangeTracker | None:
        return self._tracker

    def enable_change_tracking(self, tracker: ChangeTracker | None = None) -> ChangeTracker:
        """Attach a tracker; every loaded entity starts UNCHANGED."""
        self._tracker = tracker or ChangeTracker()
        self._observed.clear()
        for kind in EntityKind:
            if self._proxies is None or self._proxies[kind].is_loaded:
                entities = (
                    self._collections[kind]
                    if self._proxies is None
                    else self._proxies[kind].value or []
                )
                for entity in entities:
                    entity.attach_observer(self._on_entity_changed)
                self._observed.add(kind)
        return self._tracker

    @property
    def is_change_tracking_enabled(self) -> bool:
        return self._tracker is not None

    @property
    def has_unsaved_changes(self) -> bool:
        return self._tracker is not None and self._tracker.has_unsaved_changes

    def accept_all_changes(self) -> None:
        if self._tracker is not None:
            self._tracker.accept_all_changes()

    def _on_entity_changed(
        self, entity: SemanticModelEntity, field: str, previous: Any
    ) -> None:
        if self._tracker is None:
            return
        previous_ref = None
        if field == "schema":
            previous_ref = EntityRef(entity.kind, previous, entity.name)
        elif field == "name":
            previous_ref = EntityRef(entity.kind, entity.schema, previous)
        self._tracker.mark_modified(entity, previous_ref)

    @staticmethod
    def _check_kind(entity: SemanticModelEntity, kind: EntityKind) -> None:
        if entity.kind is not kind:
            raise ValidationError(
                f"{entity.display_name} is a {entity.kind.value}, not a {kind.value}"
            )
