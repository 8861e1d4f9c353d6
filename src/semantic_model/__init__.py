"""
Semantic model domain: entities, identity, lazy collections and dirty tracking.

Main components:
- SemanticModel: aggregate root holding tables, views and stored procedures
- Table / View / StoredProcedure: entity variants
- EmbeddingEnvelope / EmbeddingMetadata: optional vector attached to an entity
- EntityKeyBuilder: deterministic `{model}:{kind}:{schema}.{name}` keys
- EntityNameSanitizer / PathValidator: name and location safety checks
- LazyLoadingProxy: single-fetch deferred collection loader
- ChangeTracker: per-entity dirty-state ledger
"""

from src.semantic_model.change_tracking import ChangeTracker, EntityState
from src.semantic_model.keys import EntityKeyBuilder
from src.semantic_model.lazy import LazyLoadingProxy, LoadState
from src.semantic_model.model import SemanticModel
from src.semantic_model.sanitizer import EntityNameSanitizer, PathValidator
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

__all__ = [
    "ChangeTracker",
    "Column",
    "EmbeddingEnvelope",
    "EmbeddingMetadata",
    "ENTITY_TYPES",
    "EntityKeyBuilder",
    "EntityKind",
    "EntityNameSanitizer",
    "EntityRef",
    "EntityState",
    "Index",
    "LazyLoadingProxy",
    "LoadState",
    "PathValidator",
    "SemanticModel",
    "SemanticModelEntity",
    "StoredProcedure",
    "Table",
    "View",
]
