"""
Mapping between domain entities and their stored shapes.

Three shapes are produced here:
- PersistedEntityDto (local disk, blob store): {"data": {...}, "embedding": {...}}
- DocumentEntityDto (document store): one flat document per entity with
  the vector at a configurable field path
- IndexDocument: per-model manifest of every entity and its storage
  reference

Field names are camelCase on disk so files stay readable by other tools
that consume the same models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.errors import ConfigurationError, CorruptDataError, ValidationError
from src.semantic_model.keys import EntityKeyBuilder
from src.semantic_model.schemas import (
    ENTITY_TYPES,
    Column,
    EmbeddingEnvelope,
    EmbeddingMetadata,
    EntityKind,
    EntityRef,
    Index,
    SemanticModelEntity,
    StoredProcedure,
    Table,
    View,
)

INDEX_FORMAT_VERSION = 1
EMBEDDING_METADATA_PATH = "embedding.metadata"
NAMED_VECTORS_PATH = "embedding.namedVectors"

# Paths every entity document already uses; the vector may not sit on or under them
RESERVED_DOCUMENT_PATHS = (
    "id",
    "modelName",
    "partitionKey",
    "entityType",
    "schema",
    "name",
    "data",
    EMBEDDING_METADATA_PATH,
    NAMED_VECTORS_PATH,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class IndexDocument:
    """Per-model manifest listing every entity and where it is stored."""

    name: str
    source: str
    description: str | None = None
    entities: list[EntityRef] = field(default_factory=list)
    created_utc: datetime = field(default_factory=utc_now)
    last_modified_utc: datetime = field(default_factory=utc_now)
    version: int = INDEX_FORMAT_VERSION

    def refs_of(self, kind: EntityKind) -> list[EntityRef]:
        return [ref for ref in self.entities if ref.kind is kind]

    def find(self, ref: EntityRef) -> EntityRef | None:
        for entry in self.entities:
            if entry.identity == ref.identity:
                return entry
        return None

    def apply(
        self, upserts: list[EntityRef], deletes: list[EntityRef]
    ) -> "IndexDocument":
        """Return a new manifest with entries replaced/removed."""
        removed = {ref.identity for ref in deletes} | {ref.identity for ref in upserts}
        entries = [ref for ref in self.entities if ref.identity not in removed]
        entries.extend(upserts)
        return IndexDocument(
            name=self.name,
            source=self.source,
            description=self.description,
            entities=entries,
            created_utc=self.created_utc,
            last_modified_utc=utc_now(),
            version=self.version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "name": self.name,
            "source": self.source,
            "description": self.description,
            "createdUtc": _format_dt(self.created_utc),
            "lastModifiedUtc": _format_dt(self.last_modified_utc),
            "entities": [
                {
                    "kind": ref.kind.value,
                    "schema": ref.schema,
                    "name": ref.name,
                    "reference": ref.reference,
                }
                for ref in self.entities
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, location: str | None = None) -> "IndexDocument":
        try:
            return cls(
                name=data["name"],
                source=data.get("source", ""),
                description=data.get("description"),
                entities=[
                    EntityRef(
                        kind=EntityKind(entry["kind"]),
                        schema=entry["schema"],
                        name=entry["name"],
                        reference=entry.get("reference"),
                    )
                    for entry in data.get("entities", [])
                ],
                created_utc=_parse_dt(data.get("createdUtc")) or utc_now(),
                last_modified_utc=_parse_dt(data.get("lastModifiedUtc")) or utc_now(),
                version=int(data.get("version", INDEX_FORMAT_VERSION)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptDataError(
                f"Invalid index document: {e}", operation="load_index", location=location
            ) from e


# Entity fields


def _column_to_dict(column: Column) -> dict[str, Any]:
    return {
        "name": column.name,
        "type": column.type,
        "description": column.description,
        "isPrimaryKey": column.is_primary_key,
        "isNullable": column.is_nullable,
        "isIdentity": column.is_identity,
        "isComputed": column.is_computed,
        "maxLength": column.max_length,
        "precision": column.precision,
        "scale": column.scale,
        "referencedTable": column.referenced_table,
        "referencedColumn": column.referenced_column,
    }


def _column_from_dict(data: dict[str, Any]) -> Column:
    return Column(
        name=data["name"],
        type=data.get("type", ""),
        description=data.get("description"),
        is_primary_key=data.get("isPrimaryKey", False),
        is_nullable=data.get("isNullable", True),
        is_identity=data.get("isIdentity", False),
        is_computed=data.get("isComputed", False),
        max_length=data.get("maxLength"),
        precision=data.get("precision"),
        scale=data.get("scale"),
        referenced_table=data.get("referencedTable"),
        referenced_column=data.get("referencedColumn"),
    )


def _index_to_dict(index: Index) -> dict[str, Any]:
    return {
        "name": index.name,
        "type": index.type,
        "columnName": index.column_name,
        "isUnique": index.is_unique,
        "isPrimaryKey": index.is_primary_key,
        "isUniqueConstraint": index.is_unique_constraint,
    }


def _index_from_dict(data: dict[str, Any]) -> Index:
    return Index(
        name=data["name"],
        type=data.get("type"),
        column_name=data.get("columnName"),
        is_unique=data.get("isUnique", False),
        is_primary_key=data.get("isPrimaryKey", False),
        is_unique_constraint=data.get("isUniqueConstraint", False),
    )


def entity_to_dict(entity: SemanticModelEntity) -> dict[str, Any]:
    """Core entity fields (no embedding)."""
    data: dict[str, Any] = {
        "schema": entity.schema,
        "name": entity.name,
        "description": entity.description,
        "semanticDescription": entity.semantic_description,
        "semanticDescriptionLastUpdate": _format_dt(entity.semantic_description_last_update),
        "notUsed": entity.not_used,
        "notUsedReason": entity.not_used_reason,
    }
    if isinstance(entity, Table):
        data["columns"] = [_column_to_dict(c) for c in entity.columns]
        data["indexes"] = [_index_to_dict(i) for i in entity.indexes]
    elif isinstance(entity, View):
        data["definition"] = entity.definition
        data["columns"] = [_column_to_dict(c) for c in entity.columns]
    elif isinstance(entity, StoredProcedure):
        data["definition"] = entity.definition
        data["parameters"] = entity.parameters
    return data


def entity_from_dict(kind: EntityKind, data: dict[str, Any]) -> SemanticModelEntity:
    """Build an entity from its core fields."""
    common = dict(
        schema=data["schema"],
        name=data["name"],
        description=data.get("description"),
        semantic_description=data.get("semanticDescription"),
        semantic_description_last_update=_parse_dt(data.get("semanticDescriptionLastUpdate")),
        not_used=data.get("notUsed", False),
        not_used_reason=data.get("notUsedReason"),
    )
    if kind is EntityKind.TABLE:
        return Table(
            **common,
            columns=[_column_from_dict(c) for c in data.get("columns", [])],
            indexes=[_index_from_dict(i) for i in data.get("indexes", [])],
        )
    if kind is EntityKind.VIEW:
        return View(
            **common,
            definition=data.get("definition"),
            columns=[_column_from_dict(c) for c in data.get("columns", [])],
        )
    return ENTITY_TYPES[kind](
        **common,
        definition=data.get("definition"),
        parameters=data.get("parameters"),
    )


# Embedding envelope


def metadata_to_dict(metadata: EmbeddingMetadata) -> dict[str, Any]:
    data: dict[str, Any] = {
        "model": metadata.model,
        "dimensions": metadata.dimensions,
        "contentHash": metadata.content_hash,
        "lastUpdatedUtc": _format_dt(metadata.last_updated_utc),
        "version": metadata.version,
    }
    if metadata.service_id:
        data["serviceId"] = metadata.service_id
    return data


def metadata_from_dict(data: dict[str, Any]) -> EmbeddingMetadata:
    return EmbeddingMetadata(
        model=data["model"],
        dimensions=int(data["dimensions"]),
        content_hash=data["contentHash"],
        last_updated_utc=_parse_dt(data.get("lastUpdatedUtc")) or utc_now(),
        version=str(data.get("version", "1")),
        service_id=data.get("serviceId"),
    )


def envelope_to_dict(envelope: EmbeddingEnvelope) -> dict[str, Any]:
    data: dict[str, Any] = {
        "vector": list(envelope.vector),
        "metadata": metadata_to_dict(envelope.metadata),
    }
    if envelope.named_vectors:
        data["namedVectors"] = {k: list(v) for k, v in envelope.named_vectors.items()}
    return data


def envelope_from_dict(data: dict[str, Any]) -> EmbeddingEnvelope:
    return EmbeddingEnvelope(
        vector=[float(x) for x in data["vector"]],
        metadata=metadata_from_dict(data["metadata"]),
        named_vectors={
            k: [float(x) for x in v] for k, v in data.get("namedVectors", {}).items()
        },
    )


# PersistedEntityDto (local disk / blob)


def to_persisted_dto(entity: SemanticModelEntity) -> dict[str, Any]:
    dto: dict[str, Any] = {"data": entity_to_dict(entity)}
    if entity.embedding is not None:
        dto["embedding"] = envelope_to_dict(entity.embedding)
    return dto


def from_persisted_dto(
    kind: EntityKind, payload: Any, *, location: str | None = None
) -> SemanticModelEntity:
    """
    Read an entity file.

    Files written before embeddings existed hold the bare entity object;
    those load unchanged with no embedding.
    """
    try:
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            entity = entity_from_dict(kind, payload["data"])
            embedding = payload.get("embedding")
            if embedding:
                entity.embedding = envelope_from_dict(embedding)
            return entity
        return entity_from_dict(kind, payload)
    except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
        raise CorruptDataError(
            f"Invalid entity document: {e}", operation="load_entity", location=location
        ) from e


# DocumentEntityDto (document store)


def get_path(document: dict[str, Any], path: str) -> Any:
    """Read a dotted path; None if any segment is missing."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate objects."""
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def check_vector_field_path(path: str, *, operation: str = "configure") -> str:
    """
    Validate where entity documents keep their primary vector.

    Raises:
        ConfigurationError: If the path is empty, has an empty segment, or
            equals, contains or lies inside a reserved document field
    """
    parts = path.strip().split(".")
    if not all(part.strip() for part in parts):
        raise ConfigurationError(
            f"vector_field_path '{path}' must be a dotted path without empty segments",
            operation=operation,
        )
    for reserved in RESERVED_DOCUMENT_PATHS:
        reserved_parts = reserved.split(".")
        shared = min(len(parts), len(reserved_parts))
        if parts[:shared] == reserved_parts[:shared]:
            raise ConfigurationError(
                f"vector_field_path '{path}' overlaps the reserved document field '{reserved}'",
                operation=operation,
            )
    return ".".join(parts)


def document_id(model_name: str, ref: EntityRef) -> str:
    return EntityKeyBuilder.build(model_name, ref.kind.value, ref.schema, ref.name)


def to_document_dto(
    model_name: str,
    entity: SemanticModelEntity,
    vector_field_path: str,
) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "id": document_id(model_name, entity.ref),
        "modelName": model_name,
        "partitionKey": EntityKeyBuilder.normalize_part(model_name),
        "entityType": entity.kind.value,
        "schema": entity.schema,
        "name": entity.name,
        "data": entity_to_dict(entity),
    }
    if entity.embedding is not None:
        envelope = envelope_to_dict(entity.embedding)
        set_path(doc, vector_field_path, envelope["vector"])
        set_path(doc, EMBEDDING_METADATA_PATH, envelope["metadata"])
        if "namedVectors" in envelope:
            set_path(doc, NAMED_VECTORS_PATH, envelope["namedVectors"])
    return doc


def from_document_dto(
    doc: dict[str, Any], vector_field_path: str, *, location: str | None = None
) -> SemanticModelEntity:
    try:
        entity = entity_from_dict(EntityKind(doc["entityType"]), doc["data"])
        vector = get_path(doc, vector_field_path)
        metadata = get_path(doc, EMBEDDING_METADATA_PATH)
        if vector is not None and metadata is not None:
            entity.embedding = envelope_from_dict({
                "vector": vector,
                "metadata": metadata,
                "namedVectors": get_path(doc, NAMED_VECTORS_PATH) or {},
            })
        return entity
    except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
        raise CorruptDataError(
            f"Invalid entity document: {e}", operation="load_entity", location=location
        ) from e
