"""
Managed search service backend over its REST API.

Documents are written with ``mergeOrUpload`` / ``delete`` index batches
and queried with ``vectorQueries`` (k-NN). Hybrid search adds the query
text as a keyword ``search`` in the same request. Requests go through
HTTPClient, so throttling and server errors are retried with backoff.

Service document keys only allow letters, digits, ``_``, ``-`` and ``=``;
entity keys contain ``:`` and ``.``, so the document key is the
URL-safe base64 of the entity key and the entity key is kept in ``id``.
"""

import base64
import time
from datetime import datetime
from typing import Any

import structlog

from src.errors import ConfigurationError, CorruptDataError, NotFoundError
from src.observability.metrics import get_metrics
from src.resilience.http import HTTPClient, RetryConfig
from src.vectorstore.base import VectorRecord, VectorSearchHit, VectorStore
from src.vectorstore.config import VectorIndexConfig

logger = structlog.get_logger(__name__)

LIST_PAGE_SIZE = 1000
_HIT_FIELDS = "id,entityType,schema,name"
_RECORD_FIELDS = "id,model,entityType,schema,name,text,vector,embeddingModel,contentHash,lastUpdated"


def encode_key(entity_key: str) -> str:
    return base64.urlsafe_b64encode(entity_key.encode("utf-8")).decode("ascii").rstrip("=")


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class ManagedSearchVectorStore(VectorStore):
    """
    Vector store backed by a managed search index.

    Usage:
        store = ManagedSearchVectorStore(config)
        await store.ensure_index()
        await store.upsert(records)
        hits = await store.search(query_vector, "orders-db", limit=5)
    """

    provider = "managed-search"

    def __init__(
        self,
        config: VectorIndexConfig,
        http_client: HTTPClient | None = None,
    ):
        managed = config.managed_search
        if not managed.endpoint or not managed.index_name:
            raise ConfigurationError(
                "Managed search requires endpoint and index_name", operation="create_vector_store"
            )
        self._config = config
        self._index_name = managed.index_name
        self._base_url = f"{managed.endpoint.rstrip('/')}/indexes"
        self._params = {"api-version": managed.api_version}
        self._batch_size = managed.upsert_batch_size
        self._http = http_client or HTTPClient(
            RetryConfig(max_retries=3),
            timeout=config.search_timeout_seconds,
        )
        self._metrics = get_metrics()

    @property
    def supports_hybrid(self) -> bool:
        return True

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = self._config.managed_search.api_key
        if api_key is not None:
            headers["api-key"] = api_key.get_secret_value()
        return headers

    def _docs_url(self, action: str) -> str:
        return f"{self._base_url}/{self._index_name}/docs/{action}"

    async def _post(self, action: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        response = await self._http.request(
            "POST",
            self._docs_url(action),
            operation=operation,
            location=self._index_name,
            params=self._params,
            headers=self._headers(),
            json_body=body,
        )
        try:
            return response.json()
        except ValueError as e:
            raise CorruptDataError(
                "Search service returned invalid JSON",
                operation=operation,
                location=self._index_name,
            ) from e

    # Index documents

    @staticmethod
    def _to_document(record: VectorRecord) -> dict[str, Any]:
        return {
            "@search.action": "mergeOrUpload",
            "key": encode_key(record.id),
            "id": record.id,
            "model": record.model,
            "entityType": record.entity_type,
            "schema": record.schema,
            "name": record.name,
            "text": record.text,
            "vector": record.vector,
            "embeddingModel": record.embedding_model,
            "contentHash": record.content_hash,
            "lastUpdated": record.last_updated.isoformat(),
        }

    @staticmethod
    def _from_document(doc: dict[str, Any]) -> VectorRecord:
        return VectorRecord(
            id=doc["id"],
            model=doc.get("model") or "",
            entity_type=doc.get("entityType") or "",
            schema=doc.get("schema") or "",
            name=doc.get("name") or "",
            text=doc.get("text") or "",
            vector=[float(x) for x in doc.get("vector") or []],
            embedding_model=doc.get("embeddingModel") or "",
            content_hash=doc.get("contentHash") or "",
            last_updated=datetime.fromisoformat(doc["lastUpdated"]),
        )

    async def upsert(self, records: list[VectorRecord]) -> int:
        written = 0
        for start in range(0, len(records), self._batch_size):
            batch = records[start:start + self._batch_size]
            result = await self._post(
                "index", {"value": [self._to_document(r) for r in batch]}, "upsert"
            )
            failed = [item for item in result.get("value", []) if not item.get("status", True)]
            for item in failed:
                logger.warning(
                    "Search service rejected document",
                    key=item.get("key"),
                    error=item.get("errorMessage"),
                )
            written += len(batch) - len(failed)

        self._metrics.record_vector_upsert(self.provider, written)
        logger.info("Upserted vector records", provider=self.provider, count=written)
        return written

    async def delete(self, ids: list[str]) -> int:
        deleted = 0
        for start in range(0, len(ids), self._batch_size):
            batch = ids[start:start + self._batch_size]
            body = {
                "value": [{"@search.action": "delete", "key": encode_key(i)} for i in batch]
            }
            result = await self._post("index", body, "delete")
            deleted += sum(1 for item in result.get("value", []) if item.get("status", True))
        return deleted

    # Queries

    def _hits(self, result: dict[str, Any]) -> list[VectorSearchHit]:
        hits = [
            VectorSearchHit(
                id=doc["id"],
                entity_type=doc.get("entityType") or "",
                schema=doc.get("schema") or "",
                name=doc.get("name") or "",
                score=float(doc.get("@search.score", 0.0)),
            )
            for doc in result.get("value", [])
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def _vector_query(self, query_vector: list[float], limit: int) -> dict[str, Any]:
        return {"kind": "vector", "vector": query_vector, "fields": "vector", "k": limit}

    async def search(
        self,
        query_vector: list[float],
        model_name: str,
        limit: int = 5,
    ) -> list[VectorSearchHit]:
        start = time.perf_counter()
        result = await self._post(
            "search",
            {
                "vectorQueries": [self._vector_query(query_vector, limit)],
                "filter": f"model eq {_odata_literal(model_name)}",
                "select": _HIT_FIELDS,
                "top": limit,
            },
            "search",
        )
        self._metrics.record_vector_search(self.provider, "vector", time.perf_counter() - start)
        return self._hits(result)[:limit]

    async def hybrid_search(
        self,
        query_text: str,
        query_vector: list[float],
        model_name: str,
        limit: int = 5,
    ) -> list[VectorSearchHit]:
        hybrid = self._config.hybrid
        vector_query = self._vector_query(query_vector, limit)
        vector_query["weight"] = hybrid.vector_weight
        start = time.perf_counter()
        result = await self._post(
            "search",
            {
                "search": query_text,
                "searchFields": "text,name",
                "vectorQueries": [vector_query],
                "filter": f"model eq {_odata_literal(model_name)}",
                "select": _HIT_FIELDS,
                "top": limit,
            },
            "hybrid_search",
        )
        self._metrics.record_vector_search(self.provider, "hybrid", time.perf_counter() - start)
        return self._hits(result)[:limit]

    async def get_by_ids(self, ids: list[str]) -> list[VectorRecord]:
        if not ids:
            return []
        records: list[VectorRecord] = []
        for start in range(0, len(ids), self._batch_size):
            batch = ids[start:start + self._batch_size]
            keys = "|".join(encode_key(i) for i in batch)
            result = await self._post(
                "search",
                {
                    "search": "*",
                    "filter": f"search.in(key, {_odata_literal(keys)}, '|')",
                    "select": _RECORD_FIELDS,
                    "top": len(batch),
                },
                "get_by_ids",
            )
            try:
                records.extend(self._from_document(doc) for doc in result.get("value", []))
            except (KeyError, TypeError, ValueError) as e:
                raise CorruptDataError(
                    f"Invalid record in search index: {e}",
                    operation="get_by_ids",
                    location=self._index_name,
                ) from e
        return records

    async def list_ids(self, model_name: str) -> list[str]:
        ids: list[str] = []
        skip = 0
        while True:
            result = await self._post(
                "search",
                {
                    "search": "*",
                    "filter": f"model eq {_odata_literal(model_name)}",
                    "select": "id",
                    "orderby": "key",
                    "top": LIST_PAGE_SIZE,
                    "skip": skip,
                },
                "list_ids",
            )
            page = [doc["id"] for doc in result.get("value", [])]
            ids.extend(page)
            if len(page) < LIST_PAGE_SIZE:
                return ids
            skip += LIST_PAGE_SIZE

    # Index management

    def index_definition(self) -> dict[str, Any]:
        """Index schema: filterable metadata, searchable text, HNSW vector field."""
        dimensions = self._config.expected_dimensions
        return {
            "name": self._index_name,
            "fields": [
                {"name": "key", "type": "Edm.String", "key": True, "sortable": True},
                {"name": "id", "type": "Edm.String", "filterable": True},
                {"name": "model", "type": "Edm.String", "filterable": True},
                {"name": "entityType", "type": "Edm.String", "filterable": True},
                {"name": "schema", "type": "Edm.String", "filterable": True},
                {"name": "name", "type": "Edm.String", "searchable": True},
                {"name": "text", "type": "Edm.String", "searchable": True},
                {
                    "name": "vector",
                    "type": "Collection(Edm.Single)",
                    "searchable": True,
                    "dimensions": dimensions,
                    "vectorSearchProfile": "default-profile",
                },
                {"name": "embeddingModel", "type": "Edm.String"},
                {"name": "contentHash", "type": "Edm.String"},
                {"name": "lastUpdated", "type": "Edm.String"},
            ],
            "vectorSearch": {
                "algorithms": [{"name": "default-hnsw", "kind": "hnsw"}],
                "profiles": [{"name": "default-profile", "algorithm": "default-hnsw"}],
            },
        }

    async def ensure_index(self) -> None:
        """
        Check that the index exists, creating it when provisioning is on.

        Raises:
            ConfigurationError: If the index is missing and provisioning is off
        """
        url = f"{self._base_url}/{self._index_name}"
        try:
            await self._http.request(
                "GET", url, operation="ensure_index", location=self._index_name,
                params=self._params, headers=self._headers(),
            )
            return
        except NotFoundError:
            if not self._config.provision_if_missing:
                raise ConfigurationError(
                    f"Search index '{self._index_name}' does not exist and "
                    "provision_if_missing is disabled",
                    operation="ensure_index",
                    location=self._index_name,
                ) from None

        await self._http.request(
            "PUT", url, operation="ensure_index", location=self._index_name,
            params=self._params, headers=self._headers(), json_body=self.index_definition(),
        )
        logger.info("Provisioned search index", index=self._index_name)

    async def close(self) -> None:
        await self._http.close()
