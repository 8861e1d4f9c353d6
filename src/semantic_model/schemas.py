"""Schema definitions for semantic model entities.

A semantic model holds three entity kinds (tables, views and stored
procedures). Each entity may carry an EmbeddingEnvelope; an entity
without one has simply not been embedded yet.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar

from src.errors import ValidationError
from src.semantic_model.sanitizer import EntityNameSanitizer

EMBEDDING_PIPELINE_VERSION = "1"


class EntityKind(str, Enum):
    """Entity kinds stored in a semantic model."""

    TABLE = "table"
    VIEW = "view"
    STORED_PROCEDURE = "storedprocedure"

    @property
    def folder(self) -> str:
        """Folder (or blob segment) holding entities of this kind."""
        return {
            EntityKind.TABLE: "tables",
            EntityKind.VIEW: "views",
            EntityKind.STORED_PROCEDURE: "storedprocedures",
        }[self]

    @property
    def label(self) -> str:
        """Human-readable kind used in embeddable text."""
        return {
            EntityKind.TABLE: "Table",
            EntityKind.VIEW: "View",
            EntityKind.STORED_PROCEDURE: "Stored Procedure",
        }[self]


@dataclass(frozen=True)
class EntityRef:
    """Identity of an entity within a model, plus where it is stored."""

    kind: EntityKind
    schema: str
    name: str
    reference: str | None = None

    @property
    def identity(self) -> tuple[EntityKind, str, str]:
        return (self.kind, self.schema.lower(), self.name.lower())


@dataclass
class EmbeddingMetadata:
    """Provenance of a stored vector.

    Attributes:
        model: Embedding model identifier
        dimensions: Vector length
        content_hash: SHA-256 (hex) of the text that was embedded
        last_updated_utc: When the vector was generated
        version: Embedding pipeline version
        service_id: Embedding service identifier
    """

    model: str
    dimensions: int
    content_hash: str
    last_updated_utc: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    version: str = EMBEDDING_PIPELINE_VERSION
    service_id: str | None = None

    def __post_init__(self) -> None:
        if self.dimensions <= 0:
            raise ValidationError(f"Embedding dimensions must be positive, got {self.dimensions}")


@dataclass
class EmbeddingEnvelope:
    """A primary vector plus its metadata.

    named_vectors holds additional vectors keyed by field name; it is
    empty unless a pipeline produces more than the primary vector.
    """

    vector: list[float]
    metadata: EmbeddingMetadata
    named_vectors: dict[str, list[float]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.vector) != self.metadata.dimensions:
            raise ValidationError(
                f"Vector length {len(self.vector)} does not match recorded "
                f"dimensions {self.metadata.dimensions}"
            )


class _OwnedRecord:
    """Base for records nested in an entity; field assignments notify the owner."""

    def __setattr__(self, name: str, value: Any) -> None:
        object.__setattr__(self, name, value)
        owner = self.__dict__.get("_owner")
        if owner is not None and not name.startswith("_"):
            owner()

    def attach_owner(self, owner: Callable[[], None] | None) -> None:
        object.__setattr__(self, "_owner", owner)


class ObservedList(list):
    """
    List of nested records that reports every in-place mutation.

    Used for Table.columns, Table.indexes and View.columns so that
    appending a column or editing one counts as a change of the entity.
    """

    def __init__(self, items: Iterable[Any] = (), on_change: Callable[[], None] | None = None):
        super().__init__(items)
        self._on_change = on_change
        self._adopt(())

    def _adopt(self, previous: Iterable[Any]) -> None:
        current = {id(item) for item in self}
        for item in previous:
            if id(item) not in current and isinstance(item, _OwnedRecord):
                item.attach_owner(None)
        for item in self:
            if isinstance(item, _OwnedRecord):
                item.attach_owner(self._changed)

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def detach(self) -> None:
        """Stop reporting to the owning entity (the list was replaced)."""
        self._on_change = None


def _mutating(name: str) -> Callable[..., Any]:
    method = getattr(list, name)

    def wrapper(self: ObservedList, *args: Any, **kwargs: Any) -> Any:
        previous = list(self)
        result = method(self, *args, **kwargs)
        self._adopt(previous)
        self._changed()
        return result

    wrapper.__name__ = name
    return wrapper


for _name in (
    "append", "extend", "insert", "remove", "pop", "clear", "sort", "reverse",
    "__setitem__", "__delitem__", "__iadd__", "__imul__",
):
    setattr(ObservedList, _name, _mutating(_name))


@dataclass
class Column(_OwnedRecord):
    """A table or view column."""

    name: str
    type: str
    description: str | None = None
    is_primary_key: bool = False
    is_nullable: bool = True
    is_identity: bool = False
    is_computed: bool = False
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    referenced_table: str | None = None
    referenced_column: str | None = None


@dataclass
class Index(_OwnedRecord):
    """A table index."""

    name: str
    type: str | None = None
    column_name: str | None = None
    is_unique: bool = False
    is_primary_key: bool = False
    is_unique_constraint: bool = False


@dataclass
class SemanticModelEntity:
    """Fields shared by tables, views and stored procedures.

    Assigning any public field notifies the attached observer (the owning
    model's change tracker), and so does any in-place edit of a nested
    column or index list. The embedding field is excluded: vector
    freshness is tracked by content hash, not by the change tracker.
    """

    kind: ClassVar[EntityKind]
    _untracked_fields: ClassVar[frozenset[str]] = frozenset({"embedding"})
    _nested_fields: ClassVar[frozenset[str]] = frozenset({"columns", "indexes"})

    schema: str
    name: str
    description: str | None = None
    semantic_description: str | None = None
    semantic_description_last_update: datetime | None = None
    not_used: bool = False
    not_used_reason: str | None = None
    embedding: EmbeddingEnvelope | None = None
    _observer: Callable[["SemanticModelEntity", str, Any], None] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        EntityNameSanitizer.validate(self.schema, field="schema")
        EntityNameSanitizer.validate(self.name)

    def __setattr__(self, name: str, value: Any) -> None:
        observer = self.__dict__.get("_observer")
        previous = self.__dict__.get(name)
        if name in ("schema", "name") and observer is not None:
            EntityNameSanitizer.validate(value, field=name)
        if name in self._nested_fields and value is not None:
            if isinstance(previous, ObservedList):
                previous.detach()
            value = ObservedList(value, on_change=self._nested_notifier(name))
        object.__setattr__(self, name, value)
        if (
            observer is not None
            and not name.startswith("_")
            and name not in self._untracked_fields
        ):
            observer(self, name, previous)

    @property
    def ref(self) -> EntityRef:
        return EntityRef(self.kind, self.schema, self.name)

    @property
    def display_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def attach_observer(
        self, observer: Callable[["SemanticModelEntity", str, Any], None] | None
    ) -> None:
        object.__setattr__(self, "_observer", observer)

    def _nested_notifier(self, name: str) -> Callable[[], None]:
        def notify() -> None:
            observer = self.__dict__.get("_observer")
            if observer is not None:
                observer(self, name, None)

        return notify


@dataclass
class Table(SemanticModelEntity):
    """A database table."""

    kind: ClassVar[EntityKind] = EntityKind.TABLE

    columns: list[Column] = field(default_factory=list)
    indexes: list[Index] = field(default_factory=list)


@dataclass
class View(SemanticModelEntity):
    """A database view."""

    kind: ClassVar[EntityKind] = EntityKind.VIEW

    definition: str | None = None
    columns: list[Column] = field(default_factory=list)


@dataclass
class StoredProcedure(SemanticModelEntity):
    """A stored procedure."""

    kind: ClassVar[EntityKind] = EntityKind.STORED_PROCEDURE

    definition: str | None = None
    parameters: str | None = None


ENTITY_TYPES: dict[EntityKind, type[SemanticModelEntity]] = {
    EntityKind.TABLE: Table,
    EntityKind.VIEW: View,
    EntityKind.STORED_PROCEDURE: StoredProcedure,
}
