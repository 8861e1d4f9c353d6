"""
Per-entity dirty-state ledger.

The tracker records which entities were added, modified or removed since
the last successful save, so the repository can persist only those.
"""

from enum import Enum

from src.semantic_model.schemas import EntityRef, SemanticModelEntity


class EntityState(str, Enum):
    """Change state of a tracked entity."""

    UNCHANGED = "unchanged"
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class ChangeTracker:
    """
    Tracks entity changes for a single model instance.

    Entities are keyed by object identity. Only dirty entities are held;
    anything not in the ledger is UNCHANGED, which keeps
    has_unsaved_changes O(1).
    """

    def __init__(self) -> None:
        self._entries: dict[int, tuple[SemanticModelEntity, EntityState]] = {}
        self._original_refs: dict[int, EntityRef] = {}
        self._model_modified = False

    def get_state(self, entity: SemanticModelEntity) -> EntityState:
        entry = self._entries.get(id(entity))
        return entry[1] if entry else EntityState.UNCHANGED

    def mark_added(self, entity: SemanticModelEntity) -> None:
        state = self.get_state(entity)
        if state is EntityState.REMOVED:
            # Removed then re-added before a save is an update of the stored copy
            self._entries[id(entity)] = (entity, EntityState.MODIFIED)
        else:
            self._entries[id(entity)] = (entity, EntityState.ADDED)

    def mark_modified(
        self, entity: SemanticModelEntity, previous_ref: EntityRef | None = None
    ) -> None:
        """
        Record a field update.

        Args:
            entity: The changed entity
            previous_ref: Identity before a schema/name change, so the
                stale stored copy can be removed on save
        """
        state = self.get_state(entity)
        if previous_ref is not None and state is not EntityState.ADDED:
            self._original_refs.setdefault(id(entity), previous_ref)
        if state is EntityState.UNCHANGED:
            self._entries[id(entity)] = (entity, EntityState.MODIFIED)

    def mark_removed(self, entity: SemanticModelEntity) -> None:
        state = self.get_state(entity)
        if state is EntityState.ADDED:
            # Never persisted; forget it entirely
            del self._entries[id(entity)]
        else:
            self._entries[id(entity)] = (entity, EntityState.REMOVED)

    def mark_model_modified(self) -> None:
        """Record a change to model-level fields (name, description...)."""
        self._model_modified = True

    @property
    def model_modified(self) -> bool:
        return self._model_modified

    @property
    def has_unsaved_changes(self) -> bool:
        return self._model_modified or bool(self._entries)

    def dirty_entities(self) -> list[tuple[SemanticModelEntity, EntityState]]:
        """Dirty entities in the order they were first changed."""
        return list(self._entries.values())

    def renamed_from(self, entity: SemanticModelEntity) -> EntityRef | None:
        """Stored identity of an entity whose schema/name changed, if any."""
        original = self._original_refs.get(id(entity))
        if original is None or original.identity == entity.ref.identity:
            return None
        return original

    def accept_all_changes(self) -> None:
        """Reset every entity to UNCHANGED after a successful save."""
        self._entries.clear()
        self._original_refs.clear()
        self._model_modified = False
