"""
Vector orchestration: generation, search and reconciliation.

VectorOrchestrator ties the repository, the embedding generator and the
resolved vector backend together:

- generate(): embed every entity whose text changed, persist the new
  envelopes in one commit, then push records to an external index
- search(): embed the query and ask the backend for ranked hits
- reconcile(): compare stored envelopes with the external index and fix
  missing, outdated and orphaned records

The provider is resolved through VectorIndexPolicy before any embedding
call, so misconfiguration fails fast with ConfigurationError.
"""

import asyncio
import time
from dataclasses import dataclass, field

import structlog

from src.embedding.service import EmbeddingGenerator
from src.errors import ConfigurationError, SemanticStoreError, ValidationError
from src.observability.metrics import MetricsCollector, get_metrics
from src.repository.options import RepositoryOptions
from src.repository.service import SemanticModelRepository
from src.resilience.http import HTTPClient
from src.semantic_model.model import SemanticModel
from src.semantic_model.schemas import (
    EmbeddingEnvelope,
    EmbeddingMetadata,
    EntityKind,
    SemanticModelEntity,
)
from src.storage.config import StorageConfig
from src.storage.database import Database
from src.vectorstore.base import VectorRecord, VectorSearchHit, VectorStore
from src.vectorstore.config import VectorIndexConfig
from src.vectorstore.factory import create_vector_store
from src.vectorstore.mapper import VectorRecordMapper
from src.vectorstore.policy import VectorIndexPolicy

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VectorGenerationOptions:
    """
    Options for one generate() run.

    Attributes:
        overwrite: Re-embed even when the content hash is unchanged
        dry_run: Count what would be generated without embedding or writing
        push: Push to an external index (None uses config.push_on_generate)
        fail_fast: Stop at the first failure
        skip_tables / skip_views / skip_stored_procedures: Kind filters
        object_type / schema_name / object_name: Restrict to one entity
        parallelism: Concurrent embedding calls
    """

    overwrite: bool = False
    dry_run: bool = False
    push: bool | None = None
    fail_fast: bool = False
    skip_tables: bool = False
    skip_views: bool = False
    skip_stored_procedures: bool = False
    object_type: str | None = None
    schema_name: str | None = None
    object_name: str | None = None
    parallelism: int = 4


@dataclass
class GenerationFailure:
    """One entity that could not be embedded, persisted or pushed."""

    entity_key: str
    error_type: str
    message: str


@dataclass
class GenerationSummary:
    """Counts and failures of a generate() run."""

    generated: int = 0
    skipped: int = 0
    pushed: int = 0
    failed: int = 0
    failures: list[GenerationFailure] = field(default_factory=list)
    aborted: bool = False
    provider: str | None = None

    def add_failure(self, key: str, error: BaseException) -> None:
        self.failed += 1
        message = error.message if isinstance(error, SemanticStoreError) else str(error)
        self.failures.append(GenerationFailure(key, type(error).__name__, message))


@dataclass
class ReconcileReport:
    """Drift between stored envelopes and an external index."""

    provider: str
    missing: list[str] = field(default_factory=list)
    outdated: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    upserted: int = 0
    deleted: int = 0
    failures: list[GenerationFailure] = field(default_factory=list)
    dry_run: bool = False

    @property
    def in_sync(self) -> bool:
        return not (self.missing or self.outdated or self.orphaned)

    @property
    def fixed(self) -> int:
        return self.upserted + self.deleted


@dataclass
class _Embedded:
    entity: SemanticModelEntity
    key: str
    text: str
    envelope: EmbeddingEnvelope | None = None


class VectorOrchestrator:
    """
    High-level orchestration for vector operations.

    Usage:
        orchestrator = VectorOrchestrator(repository, generator, VectorIndexConfig())
        summary = await orchestrator.generate(model, "/models/orders-db")
        hits = await orchestrator.search("orders-db", "who are our top customers", k=5)
    """

    def __init__(
        self,
        repository: SemanticModelRepository,
        generator: EmbeddingGenerator,
        config: VectorIndexConfig | None = None,
        *,
        repository_options: RepositoryOptions | None = None,
        policy: VectorIndexPolicy | None = None,
        mapper: VectorRecordMapper | None = None,
        vector_store: VectorStore | None = None,
        database: Database | None = None,
        http_client: HTTPClient | None = None,
        storage_config: StorageConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            repository: Repository used to persist envelopes
            generator: Embedding generator
            config: Vector index configuration (defaults from environment)
            repository_options: Options passed to repository calls
            policy: Provider policy
            mapper: Text and record mapper
            vector_store: Backend to use instead of building one
            database: Connected Database for document-native search
            http_client: HTTP client for managed search
            storage_config: Storage settings naming the document table
            metrics: Metrics collector
        """
        self._repository = repository
        self._generator = generator
        self._config = config or VectorIndexConfig()
        self._repo_options = repository_options or RepositoryOptions()
        self._policy = policy or VectorIndexPolicy()
        self._mapper = mapper or VectorRecordMapper()
        self._database = database
        self._http_client = http_client
        self._storage_config = storage_config
        self._metrics = metrics or get_metrics()
        self._stores: dict[str, VectorStore] = {}
        self._injected_store = vector_store

    # Provider resolution

    def resolve_provider(self) -> str:
        """Validate the configuration against the active persistence strategy."""
        strategy = self._repository.resolve_strategy(self._repo_options)
        return self._policy.resolve_provider(strategy.name, self._config)

    def _store_for(self, provider: str) -> VectorStore:
        if self._injected_store is not None:
            return self._injected_store
        store = self._stores.get(provider)
        if store is None:
            store = create_vector_store(
                provider,
                self._config,
                self._database,
                http_client=self._http_client,
                storage_config=self._storage_config,
            )
            self._stores[provider] = store
        return store

    # Generate

    async def _select_entities(
        self, model: SemanticModel, options: VectorGenerationOptions
    ) -> list[SemanticModelEntity]:
        kinds = [
            kind for kind, skip in (
                (EntityKind.TABLE, options.skip_tables),
                (EntityKind.VIEW, options.skip_views),
                (EntityKind.STORED_PROCEDURE, options.skip_stored_procedures),
            ) if not skip
        ]

        if options.object_type and options.schema_name and options.object_name:
            try:
                wanted = EntityKind(options.object_type.strip().lower())
            except ValueError:
                raise ValidationError(
                    f"Unknown object type '{options.object_type}'", operation="generate"
                ) from None
            if wanted not in kinds:
                return []
            entity = await model.find_entity(wanted, options.schema_name, options.object_name)
            return [entity] if entity is not None else []

        entities: list[SemanticModelEntity] = []
        for kind in kinds:
            entities.extend(await model.get_entities(kind))
        return entities

    async def _embed_entity(
        self,
        model_name: str,
        entity: SemanticModelEntity,
        options: VectorGenerationOptions,
    ) -> _Embedded | None:
        """Embed one entity; None when its vector is current."""
        key = self._mapper.build_key(model_name, entity)
        text = self._mapper.build_entity_text(entity)
        content_hash = self._mapper.compute_content_hash(text)

        current = entity.embedding
        if (
            not options.overwrite
            and current is not None
            and current.metadata.content_hash == content_hash
        ):
            logger.debug("Skipping unchanged entity", entity_key=key)
            return None

        if options.dry_run:
            logger.info("Dry run, would generate embedding", entity_key=key)
            return _Embedded(entity, key, text)

        start = time.perf_counter()
        vector = await self._generator.embed(text)
        latency = time.perf_counter() - start

        expected = self._config.expected_dimensions
        if len(vector) != expected:
            raise ValidationError(
                f"Embedding has {len(vector)} dimensions, expected {expected}",
                operation="generate",
                location=key,
            )

        self._metrics.record_embedding("generated", latency)
        metadata = EmbeddingMetadata(
            model=self._generator.model_id,
            dimensions=len(vector),
            content_hash=content_hash,
            service_id=self._config.embedding_service_id or self._generator.service_id,
        )
        return _Embedded(entity, key, text, EmbeddingEnvelope(vector=list(vector), metadata=metadata))

    async def generate(
        self,
        model: SemanticModel,
        location: str,
        options: VectorGenerationOptions | None = None,
    ) -> GenerationSummary:
        """
        Generate embeddings for a model's entities.

        Unchanged entities are skipped by content hash. Per-entity errors
        are collected in the summary unless fail_fast is set, in which
        case outstanding work is cancelled and the summary is marked
        aborted. Entities embedded before an abort are still persisted.

        Raises:
            ConfigurationError: Provider or recorded dimensions do not match
                the configuration; raised before any embedding call
        """
        options = options or VectorGenerationOptions()
        if options.parallelism < 1:
            raise ConfigurationError(
                f"parallelism must be >= 1, got {options.parallelism}", operation="generate"
            )

        provider = self.resolve_provider()
        entities = await self._select_entities(model, options)
        if not options.overwrite:
            self._policy.validate_recorded_dimensions(
                (e.embedding for e in entities), self._config.expected_dimensions
            )

        store = self._store_for(provider)
        push = self._config.push_on_generate if options.push is None else options.push
        push = push and not store.stores_inline and not options.dry_run

        summary = GenerationSummary(provider=provider)
        with structlog.contextvars.bound_contextvars(model_name=model.name, operation="generate"):
            logger.info(
                "Starting vector generation",
                entities=len(entities),
                provider=provider,
                push=push,
                dry_run=options.dry_run,
            )
            if push:
                await store.ensure_index()

            embedded = await self._run_embeddings(model.name, entities, options, summary)

            if options.dry_run:
                summary.generated = len(embedded)
            elif embedded:
                persisted = await self._persist(model, location, embedded, summary)
                if push and persisted:
                    await self._push(model.name, persisted, store, summary)

            logger.info(
                "Vector generation finished",
                generated=summary.generated,
                skipped=summary.skipped,
                pushed=summary.pushed,
                failed=summary.failed,
                aborted=summary.aborted,
            )
        return summary

    async def _run_embeddings(
        self,
        model_name: str,
        entities: list[SemanticModelEntity],
        options: VectorGenerationOptions,
        summary: GenerationSummary,
    ) -> list[_Embedded]:
        semaphore = asyncio.Semaphore(options.parallelism)

        async def run(entity: SemanticModelEntity) -> _Embedded | None:
            async with semaphore:
                return await self._embed_entity(model_name, entity, options)

        tasks = {asyncio.create_task(run(e)): e for e in entities}
        pending = set(tasks)
        embedded: list[_Embedded] = []
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    entity = tasks[task]
                    error = task.exception()
                    if error is None:
                        result = task.result()
                        if result is None:
                            summary.skipped += 1
                            self._metrics.record_embedding("skipped")
                        else:
                            embedded.append(result)
                        continue

                    if isinstance(error, ConfigurationError):
                        raise error
                    key = self._mapper.build_key(model_name, entity)
                    logger.warning(
                        "Embedding failed",
                        entity_key=key,
                        error_type=type(error).__name__,
                        error=str(error),
                    )
                    self._metrics.record_embedding("failed")
                    summary.add_failure(key, error)
                    if options.fail_fast:
                        summary.aborted = True

                if summary.aborted:
                    logger.warning("Fail-fast abort", outstanding=len(pending))
                    break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        # Deterministic commit order
        embedded.sort(key=lambda item: item.key)
        return embedded

    async def _persist(
        self,
        model: SemanticModel,
        location: str,
        embedded: list[_Embedded],
        summary: GenerationSummary,
    ) -> list[_Embedded]:
        """Attach envelopes and write them in one commit; undo on failure."""
        previous = {id(item.entity): item.entity.embedding for item in embedded}
        for item in embedded:
            item.entity.embedding = item.envelope
        try:
            await self._repository.save_entities(
                model, location, [item.entity for item in embedded], self._repo_options
            )
        except ConfigurationError:
            self._restore(embedded, previous)
            raise
        except SemanticStoreError as e:
            self._restore(embedded, previous)
            logger.error("Persisting embeddings failed", error=str(e), entities=len(embedded))
            for item in embedded:
                summary.add_failure(item.key, e)
            return []
        except BaseException:
            self._restore(embedded, previous)
            raise

        summary.generated += len(embedded)
        return embedded

    @staticmethod
    def _restore(embedded: list[_Embedded], previous: dict[int, EmbeddingEnvelope | None]) -> None:
        for item in embedded:
            item.entity.embedding = previous[id(item.entity)]

    def _record(self, model_name: str, item: _Embedded) -> VectorRecord:
        return self._mapper.to_record(
            model_name, item.entity, item.text, item.envelope.vector, item.envelope.metadata
        )

    async def _push(
        self,
        model_name: str,
        persisted: list[_Embedded],
        store: VectorStore,
        summary: GenerationSummary,
    ) -> None:
        records = [self._record(model_name, item) for item in persisted]
        try:
            summary.pushed = await store.upsert(records)
        except ConfigurationError:
            raise
        except SemanticStoreError as e:
            logger.error("Pushing vectors failed", error=str(e), records=len(records))
            for record in records:
                summary.add_failure(record.id, e)
            return

    # Search

    async def search(self, model_name: str, query_text: str, k: int = 5) -> list[VectorSearchHit]:
        """
        Ranked hits for a text query.

        Hybrid search is used when enabled and supported by the backend;
        otherwise the query runs as pure vector search.
        """
        if k <= 0:
            return []
        store = self._store_for(self.resolve_provider())
        vector = await self._generator.embed(query_text)
        expected = self._config.expected_dimensions
        if len(vector) != expected:
            raise ValidationError(
                f"Query embedding has {len(vector)} dimensions, expected {expected}",
                operation="search",
            )

        if self._config.hybrid.enabled and store.supports_hybrid:
            hits = await store.hybrid_search(query_text, vector, model_name, k)
        else:
            hits = await store.search(vector, model_name, k)

        hits = sorted(hits, key=lambda h: h.score, reverse=True)[:k]
        logger.debug("Vector search", model_name=model_name, provider=store.provider, hits=len(hits))
        return hits

    # Reconcile

    async def reconcile(
        self, model: SemanticModel, location: str, dry_run: bool = False
    ) -> ReconcileReport:
        """
        Compare stored envelopes with the external index and fix drift.

        Missing and outdated records are upserted from the stored
        envelopes; orphaned records are deleted. Inline backends are
        always in sync.
        """
        provider = self.resolve_provider()
        store = self._store_for(provider)
        report = ReconcileReport(provider=provider, dry_run=dry_run)
        if store.stores_inline:
            logger.info("Vectors stored inline, nothing to reconcile", location=location)
            return report

        local: dict[str, SemanticModelEntity] = {}
        for entity in await model.get_all_entities():
            if entity.embedding is not None:
                local[self._mapper.build_key(model.name, entity)] = entity

        remote_ids = set(await store.list_ids(model.name))
        remote = {r.id: r for r in await store.get_by_ids(sorted(local))}

        for key, entity in sorted(local.items()):
            record = remote.get(key)
            if record is None:
                report.missing.append(key)
            elif record.content_hash != entity.embedding.metadata.content_hash:
                report.outdated.append(key)
        report.orphaned = sorted(remote_ids - set(local))

        logger.info(
            "Reconcile drift",
            location=location,
            missing=len(report.missing),
            outdated=len(report.outdated),
            orphaned=len(report.orphaned),
            dry_run=dry_run,
        )
        if dry_run or report.in_sync:
            return report

        to_upsert = report.missing + report.outdated
        if to_upsert:
            records = [self._entity_record(model.name, local[key]) for key in to_upsert]
            try:
                report.upserted = await store.upsert(records)
            except ConfigurationError:
                raise
            except SemanticStoreError as e:
                report.failures.extend(
                    GenerationFailure(key, type(e).__name__, e.message) for key in to_upsert
                )

        if report.orphaned:
            try:
                report.deleted = await store.delete(report.orphaned)
            except ConfigurationError:
                raise
            except SemanticStoreError as e:
                report.failures.extend(
                    GenerationFailure(key, type(e).__name__, e.message) for key in report.orphaned
                )

        return report

    def _entity_record(self, model_name: str, entity: SemanticModelEntity) -> VectorRecord:
        envelope = entity.embedding
        return self._mapper.to_record(
            model_name,
            entity,
            self._mapper.build_entity_text(entity),
            envelope.vector,
            envelope.metadata,
        )

    async def close(self) -> None:
        for store in self._stores.values():
            await store.close()
        self._stores.clear()
