"""
Vector provider resolution and configuration validation.

Resolution table:

| strategy            | provider          | result                 |
|---------------------|-------------------|------------------------|
| document_store      | auto              | document-native        |
| document_store      | document-native   | document-native        |
| document_store      | anything else     | ConfigurationError     |
| local_disk / blob   | document-native   | ConfigurationError     |
| local_disk / blob   | managed-search    | managed-search         |
| local_disk / blob   | auto, configured  | managed-search         |
| local_disk / blob   | auto              | in-memory              |
| any                 | in-memory         | in-memory              |

Every violation raises ConfigurationError before any I/O happens.
"""

from collections.abc import Iterable

import structlog

from src.errors import ConfigurationError
from src.semantic_model.schemas import EmbeddingEnvelope
from src.storage.dto import check_vector_field_path
from src.vectorstore.config import VectorIndexConfig

logger = structlog.get_logger(__name__)

DOCUMENT_STORE_STRATEGY = "document_store"

IN_MEMORY = "in-memory"
MANAGED_SEARCH = "managed-search"
DOCUMENT_NATIVE = "document-native"

DISTANCE_FUNCTIONS = frozenset({"cosine", "dot-product", "euclidean"})
INDEX_TYPES = frozenset({"tree-based", "quantized", "flat"})


class VectorIndexPolicy:
    """Decides which vector backend a persistence strategy may use."""

    @staticmethod
    def is_managed_search_configured(config: VectorIndexConfig) -> bool:
        managed = config.managed_search
        return bool(managed.endpoint and managed.endpoint.strip()) and bool(
            managed.index_name and managed.index_name.strip()
        )

    def resolve_provider(self, strategy_name: str, config: VectorIndexConfig) -> str:
        """
        Resolve and validate the provider for a persistence strategy.

        Args:
            strategy_name: Active persistence strategy name
            config: Vector index configuration

        Returns:
            in-memory, managed-search or document-native

        Raises:
            ConfigurationError: On an incompatible or incomplete configuration
        """
        strategy = (strategy_name or "").strip().lower()
        requested = config.provider

        if config.expected_dimensions <= 0:
            raise ConfigurationError(
                f"expected_dimensions must be a positive integer, got {config.expected_dimensions}",
                operation="resolve_provider",
            )

        if strategy == DOCUMENT_STORE_STRATEGY:
            if requested not in ("auto", DOCUMENT_NATIVE):
                raise ConfigurationError(
                    f"Persistence strategy '{strategy}' stores vectors in its documents; "
                    f"provider '{requested}' is not allowed",
                    operation="resolve_provider",
                )
            provider = DOCUMENT_NATIVE
        elif requested == DOCUMENT_NATIVE:
            raise ConfigurationError(
                f"Provider '{DOCUMENT_NATIVE}' requires the '{DOCUMENT_STORE_STRATEGY}' "
                f"persistence strategy, not '{strategy}'",
                operation="resolve_provider",
            )
        elif requested == MANAGED_SEARCH:
            self._check_managed_search(config)
            self._check_allowed(strategy, config, MANAGED_SEARCH)
            provider = MANAGED_SEARCH
        elif requested == "auto":
            if self.is_managed_search_configured(config) and self._is_allowed(strategy, config):
                provider = MANAGED_SEARCH
            else:
                provider = IN_MEMORY
        else:
            provider = IN_MEMORY

        if provider == DOCUMENT_NATIVE:
            self._check_document_native(config)

        logger.debug(
            "Resolved vector provider",
            strategy=strategy,
            requested=requested,
            provider=provider,
        )
        return provider

    def validate_recorded_dimensions(
        self, envelopes: Iterable[EmbeddingEnvelope | None], expected: int
    ) -> None:
        """
        Check that already stored vectors have the expected length.

        Raises:
            ConfigurationError: If any recorded embedding has another dimension
        """
        for envelope in envelopes:
            if envelope is None:
                continue
            recorded = envelope.metadata.dimensions
            if recorded != expected:
                raise ConfigurationError(
                    f"Stored embeddings have {recorded} dimensions but "
                    f"expected_dimensions is {expected}; regenerate with overwrite "
                    "or restore the previous setting",
                    operation="validate_dimensions",
                )

    @staticmethod
    def _is_allowed(strategy: str, config: VectorIndexConfig) -> bool:
        allowed = {name.strip().lower() for name in config.allowed_for_repository}
        return not allowed or strategy in allowed

    def _check_allowed(self, strategy: str, config: VectorIndexConfig, provider: str) -> None:
        if not self._is_allowed(strategy, config):
            raise ConfigurationError(
                f"Vector provider '{provider}' is not allowed for persistence strategy '{strategy}'",
                operation="resolve_provider",
            )

    def _check_managed_search(self, config: VectorIndexConfig) -> None:
        missing = [
            name
            for name in ("endpoint", "index_name")
            if not (getattr(config.managed_search, name) or "").strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Provider '{MANAGED_SEARCH}' requires managed_search {', '.join(missing)}",
                operation="resolve_provider",
            )

    @staticmethod
    def _check_document_native(config: VectorIndexConfig) -> None:
        native = config.document_native
        if not native.vector_field_path.strip():
            raise ConfigurationError(
                "document_native.vector_field_path must not be empty",
                operation="resolve_provider",
            )
        check_vector_field_path(native.vector_field_path, operation="resolve_provider")
        if native.distance_function not in DISTANCE_FUNCTIONS:
            raise ConfigurationError(
                f"document_native.distance_function must be one of "
                f"{sorted(DISTANCE_FUNCTIONS)}, got '{native.distance_function}'",
                operation="resolve_provider",
            )
        if native.index_type not in INDEX_TYPES:
            raise ConfigurationError(
                f"document_native.index_type must be one of "
                f"{sorted(INDEX_TYPES)}, got '{native.index_type}'",
                operation="resolve_provider",
            )
