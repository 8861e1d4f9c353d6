"""
Entity to vector record mapping.

build_entity_text() produces the text that gets embedded. Its content
hash is the freshness signal for vectors: an entity whose text hashes to
the recorded content_hash does not need a new embedding.
"""

import hashlib

from src.semantic_model.keys import EntityKeyBuilder
from src.semantic_model.schemas import (
    EmbeddingMetadata,
    SemanticModelEntity,
    StoredProcedure,
    Table,
    View,
)
from src.vectorstore.base import VectorRecord

MAX_TEXT_LENGTH = 8000
TRUNCATION_MARKER = "\n...[truncated]"
DEFINITION_EXCERPT_LENGTH = 2000


class VectorRecordMapper:
    """Builds embeddable text, content hashes and VectorRecords."""

    def __init__(self, max_length: int = MAX_TEXT_LENGTH):
        self._max_length = max_length

    def build_entity_text(self, entity: SemanticModelEntity) -> str:
        """
        Text representation of an entity for embedding.

        Kind, schema and name first, then descriptions, then a structural
        summary. Texts longer than the budget end with a truncation marker.
        """
        lines = [
            f"Type: {entity.kind.label}",
            f"Schema: {entity.schema}",
            f"Name: {entity.name}",
        ]
        if entity.description and entity.description.strip():
            lines.append("Description:")
            lines.append(entity.description.strip())
        if entity.semantic_description and entity.semantic_description.strip():
            lines.append("Semantic description:")
            lines.append(entity.semantic_description.strip())

        if isinstance(entity, (Table, View)) and entity.columns:
            lines.append("Columns:")
            for column in entity.columns:
                line = f"- {column.name}: {column.type}"
                if column.is_primary_key:
                    line += " [PK]"
                if column.referenced_table:
                    line += f" -> {column.referenced_table}"
                    if column.referenced_column:
                        line += f".{column.referenced_column}"
                if column.description:
                    line += f" - {column.description}"
                lines.append(line)

        if isinstance(entity, Table) and entity.indexes:
            lines.append("Indexes:")
            for index in entity.indexes:
                flags = [flag for flag, on in (
                    ("unique", index.is_unique),
                    ("primary key", index.is_primary_key),
                ) if on]
                suffix = f" ({', '.join(flags)})" if flags else ""
                lines.append(f"- {index.name} on {index.column_name or '?'}{suffix}")

        if isinstance(entity, StoredProcedure) and entity.parameters:
            lines.append("Parameters:")
            lines.append(entity.parameters.strip())

        if isinstance(entity, (View, StoredProcedure)) and entity.definition:
            lines.append("Definition:")
            lines.append(entity.definition.strip()[:DEFINITION_EXCERPT_LENGTH])

        return self._truncate("\n".join(lines) + "\n")

    def _truncate(self, text: str) -> str:
        if len(text) <= self._max_length:
            return text
        return text[: self._max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER

    @staticmethod
    def compute_content_hash(text: str) -> str:
        """Lower-case SHA-256 hex digest of text."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def build_key(model_name: str, entity: SemanticModelEntity) -> str:
        return EntityKeyBuilder.build(model_name, entity.kind.value, entity.schema, entity.name)

    def to_record(
        self,
        model_name: str,
        entity: SemanticModelEntity,
        text: str,
        vector: list[float],
        metadata: EmbeddingMetadata,
    ) -> VectorRecord:
        return VectorRecord(
            id=self.build_key(model_name, entity),
            model=model_name,
            entity_type=entity.kind.value,
            schema=entity.schema,
            name=entity.name,
            text=text,
            vector=list(vector),
            embedding_model=metadata.model,
            content_hash=metadata.content_hash,
            last_updated=metadata.last_updated_utc,
        )
