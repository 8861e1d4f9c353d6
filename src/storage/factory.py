"""
Persistence strategy selection.

Strategies are registered by name and built on first use. Blob and
document strategies need a client that the caller builds from its own
credentials, so they are only available when that client is supplied.
"""

from collections.abc import Callable

import structlog

from src.config.settings import Settings, get_settings
from src.errors import ConfigurationError
from src.storage.base import PersistenceStrategy
from src.storage.blob_store import BlobContainerClient, BlobStorePersistenceStrategy
from src.storage.config import StorageConfig
from src.storage.document_store import DocumentContainer, DocumentStorePersistenceStrategy
from src.storage.local_disk import LocalDiskPersistenceStrategy
from src.storage.serializer import SecureJsonSerializer

logger = structlog.get_logger(__name__)

StrategyBuilder = Callable[[], PersistenceStrategy]


class PersistenceStrategyFactory:
    """
    Name-keyed registry of persistence strategies.

    Usage:
        factory = PersistenceStrategyFactory(settings, blob_container=container)
        strategy = factory.get("blob_store")
        default = factory.get()  # settings.persistence_strategy
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage_config: StorageConfig | None = None,
        *,
        blob_container: BlobContainerClient | None = None,
        document_container: DocumentContainer | None = None,
    ):
        self._settings = settings or get_settings()
        self._config = storage_config or StorageConfig()
        self._serializer = SecureJsonSerializer(self._config)
        self._builders: dict[str, StrategyBuilder] = {}
        self._instances: dict[str, PersistenceStrategy] = {}

        self.register(
            LocalDiskPersistenceStrategy.name,
            lambda: LocalDiskPersistenceStrategy(self._config, self._serializer),
        )
        if blob_container is not None:
            self.register(
                BlobStorePersistenceStrategy.name,
                lambda: BlobStorePersistenceStrategy(
                    blob_container, self._config, self._serializer
                ),
            )
        if document_container is not None:
            self.register(
                DocumentStorePersistenceStrategy.name,
                lambda: DocumentStorePersistenceStrategy(
                    document_container, self._config, self._serializer
                ),
            )

    @property
    def default_name(self) -> str:
        return self._settings.persistence_strategy

    @property
    def storage_config(self) -> StorageConfig:
        return self._config

    def available(self) -> list[str]:
        return sorted(self._builders)

    def register(self, name: str, builder: StrategyBuilder) -> None:
        """Register (or replace) the builder for a strategy name."""
        self._builders[name] = builder
        self._instances.pop(name, None)

    def get(self, name: str | None = None) -> PersistenceStrategy:
        """
        Return the strategy for name, building it on first use.

        Raises:
            ConfigurationError: If no strategy is registered under name
        """
        name = name or self.default_name
        strategy = self._instances.get(name)
        if strategy is not None:
            return strategy

        builder = self._builders.get(name)
        if builder is None:
            raise ConfigurationError(
                f"Persistence strategy '{name}' is not configured "
                f"(available: {', '.join(self.available())})",
                operation="resolve_strategy",
            )
        strategy = builder()
        self._instances[name] = strategy
        logger.debug("Persistence strategy created", strategy=name)
        return strategy
