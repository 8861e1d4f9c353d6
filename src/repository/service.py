"""
SemanticModelRepository: the facade callers use to persist models.

Composes a persistence strategy with the optional behaviors a call asks
for through RepositoryOptions:

- lazy loading: only the index is read; each entity collection is
  fetched on first access through a LazyLoadingProxy
- change tracking: a ChangeTracker is attached after load so that
  save_changes() writes only dirty entities
- caching: loaded models are kept in a TTL cache keyed by location;
  every load, hit or miss, hands out its own copy of the cached model

Every strategy call, including deferred lazy fetches, runs under the
semaphore for the active concurrency limit.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from src.config.settings import Settings, get_settings
from src.errors import SemanticStoreError
from src.observability.metrics import MetricsCollector, get_metrics
from src.repository.cache import ModelCache
from src.repository.options import RepositoryOptions
from src.repository.performance import PerformanceMonitor
from src.semantic_model.change_tracking import EntityState
from src.semantic_model.lazy import LazyLoadingProxy
from src.semantic_model.model import SemanticModel
from src.semantic_model.schemas import EntityKind, EntityRef, SemanticModelEntity
from src.storage.base import ModelHeader, PersistenceStrategy
from src.storage.dto import entity_from_dict, entity_to_dict, envelope_from_dict, envelope_to_dict
from src.storage.factory import PersistenceStrategyFactory

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _clone_entity(entity: SemanticModelEntity) -> SemanticModelEntity:
    clone = entity_from_dict(entity.kind, entity_to_dict(entity))
    if entity.embedding is not None:
        clone.embedding = envelope_from_dict(envelope_to_dict(entity.embedding))
    return clone


def _clone_model(model: SemanticModel) -> SemanticModel:
    """
    Independent copy of a cached model.

    Entities are rebuilt from their stored form. Lazy collections of the
    copy read through the cached proxies, so a collection is fetched from
    storage once and each copy gets its own entities.
    """
    header = dict(name=model.name, source=model.source, description=model.description)
    if not model.is_lazy_loading_enabled:
        entities = [_clone_entity(e) for e in model.loaded_entities()]
        return SemanticModel(
            **header,
            tables=[e for e in entities if e.kind is EntityKind.TABLE],
            views=[e for e in entities if e.kind is EntityKind.VIEW],
            stored_procedures=[e for e in entities if e.kind is EntityKind.STORED_PROCEDURE],
        )

    def loader(kind: EntityKind) -> Callable[[], Awaitable[list[SemanticModelEntity]]]:
        async def load() -> list[SemanticModelEntity]:
            return [_clone_entity(e) for e in await model.get_entities(kind)]

        return load

    clone = SemanticModel(**header)
    clone.enable_lazy_loading({
        kind: LazyLoadingProxy(loader(kind), name=f"{model.name}:{kind.folder}")
        for kind in EntityKind
    })
    return clone


class SemanticModelRepository:
    """
    Repository for semantic models over a pluggable persistence strategy.

    Usage:
        repository = SemanticModelRepository(PersistenceStrategyFactory(settings), settings)
        options = RepositoryOptionsBuilder().with_lazy_loading().with_change_tracking().build()

        model = await repository.load_model("/models/orders-db", options)
        customer = await model.find_table("dbo", "Customer")
        customer.description = "Customers with an active account"
        await repository.save_changes(model, "/models/orders-db", options)
    """

    def __init__(
        self,
        strategy_factory: PersistenceStrategyFactory,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        performance_monitor: PerformanceMonitor | None = None,
        cache: ModelCache | None = None,
    ):
        self._factory = strategy_factory
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._monitor = performance_monitor or PerformanceMonitor()
        self._cache = cache or ModelCache()
        self._semaphores: dict[int, asyncio.Semaphore] = {}

    @property
    def performance_monitor(self) -> PerformanceMonitor:
        return self._monitor

    @property
    def cache(self) -> ModelCache:
        return self._cache

    def resolve_strategy(self, options: RepositoryOptions | None = None) -> PersistenceStrategy:
        """Strategy named by options, else the configured default."""
        name = options.strategy_name if options else None
        return self._factory.get(name)

    # Guarded strategy calls

    def _semaphore_for(self, options: RepositoryOptions) -> asyncio.Semaphore | None:
        limit = options.max_concurrent_operations or self._settings.max_concurrent_operations
        if limit is None:
            return None
        semaphore = self._semaphores.get(limit)
        if semaphore is None:
            semaphore = asyncio.Semaphore(limit)
            self._semaphores[limit] = semaphore
        return semaphore

    async def _guarded(
        self,
        operation: str,
        location: str,
        strategy: PersistenceStrategy,
        options: RepositoryOptions,
        func: Callable[[], Awaitable[T]],
    ) -> T:
        semaphore = self._semaphore_for(options)
        start = time.perf_counter()
        error_type = None
        try:
            if semaphore is None:
                return await func()
            async with semaphore:
                return await func()
        except SemanticStoreError as e:
            error_type = type(e).__name__
            if e.location is None:
                e.location = location
            if e.operation is None:
                e.operation = operation
            raise
        except Exception as e:
            error_type = type(e).__name__
            raise
        finally:
            duration = time.perf_counter() - start
            self._metrics.record_storage_operation(
                strategy.name, operation, duration, error_type is None, error_type
            )

    def _track(self, operation: str, location: str, options: RepositoryOptions):
        monitor = self._monitor
        if not options.performance_monitoring.enable_local_monitoring:
            monitor = PerformanceMonitor(options.performance_monitoring)
        return monitor.track(operation, location=location)

    # Cache (failures degrade to a miss)

    async def _cache_get(self, location: str) -> SemanticModel | None:
        try:
            model = await self._cache.get(location)
        except Exception as e:
            logger.warning("Model cache read failed", location=location, error=str(e))
            return None
        self._metrics.record_cache_lookup(hit=model is not None)
        return model

    async def _cache_set(self, location: str, model: SemanticModel, options: RepositoryOptions) -> None:
        try:
            await self._cache.set(location, model, options.cache_expiration)
            self._metrics.set_cache_entries(self._cache.stats().entries)
        except Exception as e:
            logger.warning("Model cache write failed", location=location, error=str(e))

    async def _cache_invalidate(self, location: str) -> None:
        try:
            if await self._cache.invalidate(location):
                self._metrics.set_cache_entries(self._cache.stats().entries)
        except Exception as e:
            logger.warning("Model cache invalidation failed", location=location, error=str(e))

    # Load

    async def load_model(
        self, location: str, options: RepositoryOptions | None = None
    ) -> SemanticModel:
        """
        Load a model with the behaviors enabled in options.

        Raises:
            NotFoundError: If no model is stored at location
            CorruptDataError: If stored content cannot be parsed
        """
        options = options or RepositoryOptions()
        strategy = self.resolve_strategy(options)

        with self._track("load_model", location, options):
            cached = await self._cache_get(location) if options.enable_caching else None
            if cached is not None:
                logger.debug("Model cache hit", location=location)
                model = _clone_model(cached)
            elif options.enable_lazy_loading:
                model = await self._load_lazy(strategy, location, options)
            else:
                model = await self._guarded(
                    "load_model", location, strategy, options,
                    lambda: strategy.load_model(location),
                )

            if options.enable_caching and cached is None:
                # The cache keeps the pristine instance; callers only ever see copies
                await self._cache_set(location, model, options)
                model = _clone_model(model)

            if options.enable_change_tracking:
                model.enable_change_tracking()
                model.accept_all_changes()

        logger.info(
            "Model loaded",
            model_name=model.name,
            strategy=strategy.name,
            lazy=options.enable_lazy_loading,
            tracking=options.enable_change_tracking,
        )
        return model

    async def _load_lazy(
        self, strategy: PersistenceStrategy, location: str, options: RepositoryOptions
    ) -> SemanticModel:
        index = await self._guarded(
            "load_index", location, strategy, options, lambda: strategy.load_index(location)
        )
        model = SemanticModel(name=index.name, source=index.source, description=index.description)

        def loader(refs: list[EntityRef]) -> Callable[[], Awaitable[list[SemanticModelEntity]]]:
            return lambda: self._guarded(
                "load_entities", location, strategy, options,
                lambda: strategy.load_entities(location, refs),
            )

        model.enable_lazy_loading({
            kind: LazyLoadingProxy(loader(index.refs_of(kind)), name=f"{index.name}:{kind.folder}")
            for kind in EntityKind
        })
        return model

    # Save

    async def save_model(
        self, model: SemanticModel, location: str, options: RepositoryOptions | None = None
    ) -> None:
        """Persist the whole model, replacing what is stored at location."""
        options = options or RepositoryOptions()
        strategy = self.resolve_strategy(options)

        with self._track("save_model", location, options):
            # Lazy loaders take the semaphore themselves; resolve them before the save holds it
            await model.get_all_entities()
            await self._guarded(
                "save_model", location, strategy, options,
                lambda: strategy.save_model(model, location),
            )
        await self._cache_invalidate(location)
        model.accept_all_changes()

    async def save_changes(
        self, model: SemanticModel, location: str, options: RepositoryOptions | None = None
    ) -> int:
        """
        Persist only what changed since the last load or save.

        Without change tracking this is a full save_model(). Returns the
        number of entity writes and deletes issued.
        """
        options = options or RepositoryOptions()
        tracker = model.change_tracker
        if tracker is None:
            await self.save_model(model, location, options)
            return len(model.loaded_entities())
        if not tracker.has_unsaved_changes:
            logger.debug("No unsaved changes", model_name=model.name)
            return 0

        strategy = self.resolve_strategy(options)
        exists = await self._guarded(
            "exists", location, strategy, options, lambda: strategy.exists(location)
        )
        if not exists:
            # Nothing stored yet to apply a delta to
            await self.save_model(model, location, options)
            return len(model.loaded_entities())

        upserts: list[SemanticModelEntity] = []
        deletes: list[EntityRef] = []
        for entity, state in tracker.dirty_entities():
            if state is EntityState.REMOVED:
                deletes.append(entity.ref)
            else:
                upserts.append(entity)
            renamed = tracker.renamed_from(entity)
            if renamed is not None:
                deletes.append(renamed)

        with self._track("save_changes", location, options):
            await self._guarded(
                "save_changes", location, strategy, options,
                lambda: strategy.commit_changes(location, ModelHeader.of(model), upserts, deletes),
            )

        model.accept_all_changes()
        await self._cache_invalidate(location)
        logger.info(
            "Saved model changes",
            model_name=model.name,
            upserts=len(upserts),
            deletes=len(deletes),
        )
        return len(upserts) + len(deletes)

    async def save_entities(
        self,
        model: SemanticModel,
        location: str,
        entities: list[SemanticModelEntity],
        options: RepositoryOptions | None = None,
    ) -> None:
        """Write a batch of entities of an already stored model."""
        if not entities:
            return
        options = options or RepositoryOptions()
        strategy = self.resolve_strategy(options)
        with self._track("save_entities", location, options):
            await self._guarded(
                "save_entities", location, strategy, options,
                lambda: strategy.commit_changes(location, ModelHeader.of(model), entities, []),
            )
        await self._cache_invalidate(location)

    # Delete / exists / list

    async def delete_model(self, location: str, options: RepositoryOptions | None = None) -> None:
        options = options or RepositoryOptions()
        strategy = self.resolve_strategy(options)
        with self._track("delete_model", location, options):
            await self._guarded(
                "delete_model", location, strategy, options,
                lambda: strategy.delete_model(location),
            )
        await self._cache_invalidate(location)

    async def exists(self, location: str, options: RepositoryOptions | None = None) -> bool:
        options = options or RepositoryOptions()
        strategy = self.resolve_strategy(options)
        return await self._guarded(
            "exists", location, strategy, options, lambda: strategy.exists(location)
        )

    async def list_models(self, root: str, options: RepositoryOptions | None = None) -> list[str]:
        options = options or RepositoryOptions()
        strategy = self.resolve_strategy(options)
        return await self._guarded(
            "list_models", root, strategy, options, lambda: strategy.list_models(root)
        )

    def get_stats(self) -> dict:
        """Cache and performance summary."""
        metrics = self._monitor.get_metrics()
        return {
            "cache": self._cache.stats().to_dict(),
            "operations": metrics.total_operations,
            "success_rate": round(metrics.success_rate, 2),
            "average_duration_ms": round(metrics.average_duration * 1000, 2),
        }
