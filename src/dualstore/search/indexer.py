"""
Search Indexer
==============

Mirrors selected collections into Meilisearch over its REST API.

Everything here is best-effort relative to the primary store: when the
engine is disabled or unreachable, operations return a failed or skipped
IndexOutcome (or None for reads) instead of raising. SearchIndexError is
raised internally and stops at this module's public methods.

The ``indexed`` / ``indexedAt`` marker on each stored document records
whether the engine has its current version; ``sync_collection`` walks the
unmarked documents in batches.
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

import httpx

from dualstore.adapters.base import Document, QueryOptions, StoreAdapter
from dualstore.config.settings import SearchConfig
from dualstore.core.exceptions import SearchIndexError, StoreError
from dualstore.core.structured_logger import get_logger
from dualstore.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)
events = get_logger("SearchIndexer")

DEFAULT_BATCH_SIZE = 100
DEFAULT_SEARCH_LIMIT = 20

SEARCHABLE_ATTRIBUTES: dict[str, list[str]] = {
    "conversations": ["title", "tags"],
    "messages": ["text", "content"],
    "files": ["filename", "type"],
    "users": ["username", "name", "email"],
    "agents": ["name", "description", "instructions"],
    "prompts": ["title", "prompt"],
}

FILTERABLE_ATTRIBUTES: dict[str, list[str]] = {
    "conversations": ["user", "endpoint", "archived", "pinned"],
    "messages": ["user", "conversationId", "sender", "model", "endpoint"],
    "files": ["user", "type", "embedded", "conversationId"],
    "users": ["role", "provider"],
    "agents": ["author", "provider", "isPublic"],
    "prompts": ["author", "category", "isPublic"],
}

SORTABLE_ATTRIBUTES: dict[str, list[str]] = {
    "conversations": ["createdAt", "updatedAt", "title"],
    "messages": ["createdAt", "updatedAt"],
    "files": ["createdAt", "updatedAt", "filename"],
    "users": ["createdAt", "username"],
    "agents": ["createdAt", "name"],
    "prompts": ["createdAt", "title"],
}

# Fields copied into the engine per collection, on top of id and timestamps
INDEXED_FIELDS: dict[str, dict[str, Any]] = {
    "conversations": {"title": None, "user": None, "endpoint": None, "tags": [], "archived": False, "pinned": False},
    "messages": {"text": None, "content": None, "conversationId": None, "user": None, "sender": None,
                 "model": None, "endpoint": None, "tokenCount": 0},
    "files": {"filename": None, "type": None, "user": None, "conversationId": None, "bytes": 0, "embedded": False},
    "users": {"username": None, "name": None, "email": None, "role": None, "provider": None},
    "agents": {"name": None, "description": None, "instructions": None, "author": None, "provider": None,
               "isPublic": False},
    "prompts": {"title": None, "prompt": None, "category": None, "author": None, "isPublic": False},
}

UNINDEXED_QUERY = {"$or": [{"indexed": {"$exists": False}}, {"indexed": False}]}


@dataclass
class IndexOutcome:
    """Result of a best-effort engine write. Truthy when it succeeded."""
    success: bool
    error: str | None = None
    task_uid: int | None = None
    skipped: bool = False
    marked: int = 0

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def disabled(cls) -> "IndexOutcome":
        return cls(success=False, error="search indexing is disabled", skipped=True)

    def to_dict(self) -> dict[str, Any]:
        return {'success': self.success, 'error': self.error, 'taskUid': self.task_uid, 'skipped': self.skipped}


def filter_equals(field: str, value: Any) -> str:
    """Meilisearch equality filter with the value quoted and escaped."""
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'{field} = "{escaped}"'


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


class SearchIndexer:
    """Meilisearch mirror for primary-store collections."""

    def __init__(
        self,
        adapter: StoreAdapter,
        config: SearchConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.adapter = adapter
        self.config = config or SearchConfig()
        self.metrics = metrics
        self._client = client
        self._configured: set[str] = set()
        if self.config.enabled and self._client is None:
            headers = {"Authorization": f"Bearer {self.config.api_key}"} if self.config.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.config.host,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )

    def is_enabled(self) -> bool:
        return self.config.enabled and self._client is not None

    def index_uid(self, collection: str) -> str:
        return f"{self.config.index_prefix}{collection}"

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ---- HTTP ----

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SearchIndexError(
                f"Meilisearch {method} {path} returned {exc.response.status_code}: {exc.response.text[:200]}",
                details={'status': exc.response.status_code, 'path': path},
            ) from exc
        except httpx.HTTPError as exc:
            raise SearchIndexError(f"Meilisearch {method} {path} failed: {exc}", details={'path': path}) from exc
        return resp.json() if resp.content else {}

    async def _ensure_index(self, collection: str) -> None:
        """Apply attribute settings the first time a collection is touched."""
        if collection in self._configured:
            return
        settings = {
            "searchableAttributes": SEARCHABLE_ATTRIBUTES.get(collection) or ["*"],
            "filterableAttributes": FILTERABLE_ATTRIBUTES.get(collection, []),
            "sortableAttributes": SORTABLE_ATTRIBUTES.get(collection, ["createdAt"]),
        }
        await self._request("PATCH", f"/indexes/{self.index_uid(collection)}/settings", json=settings)
        self._configured.add(collection)

    def _failed(self, collection: str, operation: str, exc: Exception) -> IndexOutcome:
        logger.warning("Search %s on %s failed: %s", operation, collection, exc)
        if self.metrics:
            self.metrics.record_index_operation(collection, operation, False)
        return IndexOutcome(success=False, error=str(exc))

    def _succeeded(self, collection: str, operation: str, response: Mapping[str, Any] | None = None) -> IndexOutcome:
        if self.metrics:
            self.metrics.record_index_operation(collection, operation, True)
        return IndexOutcome(success=True, task_uid=(response or {}).get("taskUid"))

    # ---- Settings ----

    async def initialize(self) -> dict[str, IndexOutcome]:
        """Push attribute settings for every known collection."""
        if not self.is_enabled():
            return {}
        results = {}
        for collection in SEARCHABLE_ATTRIBUTES:
            try:
                await self._ensure_index(collection)
                results[collection] = self._succeeded(collection, "configure")
            except SearchIndexError as exc:
                results[collection] = self._failed(collection, "configure", exc)
        return results

    # ---- Writes ----

    def prepare_for_indexing(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        """Shape a stored document into the engine's document for its collection."""
        prepared: dict[str, Any] = {
            "id": str(document.get("id") or document.get("_id")),
            "createdAt": document.get("createdAt"),
            "updatedAt": document.get("updatedAt"),
        }
        for field, default in INDEXED_FIELDS.get(collection, {}).items():
            value = document.get(field)
            prepared[field] = default if value is None else value
        if collection == "messages" and prepared["content"] is not None and not isinstance(prepared["content"], str):
            prepared["content"] = json.dumps(prepared["content"], default=str)
        return _jsonable(prepared)

    async def _mark_indexed(self, collection: str, ids: Sequence[str]) -> int:
        try:
            result = await self.adapter.update_many(
                collection,
                {"id": {"$in": list(ids)}},
                {"indexed": True, "indexedAt": datetime.now(UTC)},
            )
        except StoreError as exc:
            raise SearchIndexError(f"Indexed {len(ids)} documents but could not mark them: {exc}") from exc
        return result.matched_count

    async def index_document(self, collection: str, document: Mapping[str, Any]) -> IndexOutcome:
        return await self.index_documents(collection, [document])

    async def index_documents(self, collection: str, documents: Sequence[Mapping[str, Any]]) -> IndexOutcome:
        if not self.is_enabled():
            return IndexOutcome.disabled()
        if not documents:
            return IndexOutcome(success=True, skipped=True)
        try:
            await self._ensure_index(collection)
            payload = [self.prepare_for_indexing(collection, d) for d in documents]
            response = await self._request(
                "POST", f"/indexes/{self.index_uid(collection)}/documents",
                params={"primaryKey": "id"}, json=payload,
            )
            marked = await self._mark_indexed(collection, [p["id"] for p in payload])
        except SearchIndexError as exc:
            return self._failed(collection, "index", exc)
        outcome = self._succeeded(collection, "index", response)
        outcome.marked = marked
        return outcome

    async def update_document(self, collection: str, document: Mapping[str, Any]) -> IndexOutcome:
        return await self.index_document(collection, document)

    async def delete_document(self, collection: str, document_id: str) -> IndexOutcome:
        if not self.is_enabled():
            return IndexOutcome.disabled()
        try:
            response = await self._request(
                "DELETE", f"/indexes/{self.index_uid(collection)}/documents/{document_id}"
            )
        except SearchIndexError as exc:
            return self._failed(collection, "delete", exc)
        return self._succeeded(collection, "delete", response)

    async def clear_index(self, collection: str) -> IndexOutcome:
        """Drop every engine document and reset the markers in the store."""
        if not self.is_enabled():
            return IndexOutcome.disabled()
        try:
            response = await self._request("DELETE", f"/indexes/{self.index_uid(collection)}/documents")
            await self.adapter.update_many(collection, {}, {"indexed": False, "indexedAt": None})
        except (SearchIndexError, StoreError) as exc:
            return self._failed(collection, "clear", exc)
        return self._succeeded(collection, "clear", response)

    # ---- Reads ----

    async def search(self, collection: str, query: str, options: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        """Raw engine response (``hits``, ``estimatedTotalHits``...) or None."""
        if not self.is_enabled():
            return None
        options = dict(options or {})
        body: dict[str, Any] = {
            "q": query,
            "limit": options.pop("limit", None) or DEFAULT_SEARCH_LIMIT,
            "offset": options.pop("offset", None) or 0,
        }
        body.update({k: v for k, v in options.items() if v is not None})
        try:
            await self._ensure_index(collection)
            return await self._request("POST", f"/indexes/{self.index_uid(collection)}/search", json=body)
        except SearchIndexError as exc:
            logger.warning("Search on %s failed: %s", collection, exc)
            return None

    async def search_documents(self, collection: str, query: str, options: Mapping[str, Any] | None = None) -> list[Document] | None:
        """Engine-ranked matches re-read from the primary store.

        Hits whose document no longer exists are dropped. Returns None when
        the engine or the store lookup fails, so callers can fall back.
        """
        result = await self.search(collection, query, options)
        if result is None:
            return None
        ids = [str(hit["id"]) for hit in result.get("hits", []) if hit.get("id") is not None]
        if not ids:
            return []
        try:
            docs = await self.adapter.find_many(collection, {"id": {"$in": ids}}, QueryOptions(limit=len(ids)))
        except StoreError as exc:
            logger.warning("Hydrating %s search hits failed: %s", collection, exc)
            return None
        by_id = {d["id"]: d for d in docs}
        return [by_id[i] for i in ids if i in by_id]

    async def get_index_stats(self, collection: str) -> dict[str, Any] | None:
        if not self.is_enabled():
            return None
        try:
            return await self._request("GET", f"/indexes/{self.index_uid(collection)}/stats")
        except SearchIndexError as exc:
            logger.warning("Stats for %s unavailable: %s", collection, exc)
            return None

    # ---- Sync ----

    async def get_unindexed_documents(self, collection: str, limit: int = DEFAULT_BATCH_SIZE) -> list[Document]:
        return await self.adapter.find_many(
            collection, UNINDEXED_QUERY, QueryOptions(sort=[("createdAt", 1)], limit=limit)
        )

    async def sync_collection(self, collection: str, batch_size: int = DEFAULT_BATCH_SIZE) -> dict[str, Any]:
        """Index every unmarked document, one batch at a time.

        Each batch is marked once indexed, so the next query always starts at
        offset zero and an interrupted sync resumes where it stopped.
        """
        if not self.is_enabled():
            return {'success': False, 'skipped': True, 'indexed': 0, 'batches': 0}
        indexed = 0
        batches = 0
        error = None
        while True:
            try:
                docs = await self.get_unindexed_documents(collection, batch_size)
            except StoreError as exc:
                error = str(exc)
                logger.warning("Sync of %s could not read unindexed documents: %s", collection, exc)
                break
            if not docs:
                break
            outcome = await self.index_documents(collection, docs)
            if not outcome:
                error = outcome.error
                break
            indexed += len(docs)
            batches += 1
            if not outcome.marked:
                # An unmarked batch would be read back again forever.
                error = f"indexed {len(docs)} documents but none could be marked"
                logger.warning("Sync of %s stopped: %s", collection, error)
                break
        events.info("Search sync finished", collection=collection, indexed=indexed, batches=batches, error=error)
        return {'success': error is None, 'skipped': False, 'indexed': indexed, 'batches': batches, 'error': error}

    # ---- Health ----

    async def health_check(self) -> dict[str, str]:
        if not self.is_enabled():
            return {'status': 'disabled', 'message': 'Meilisearch is disabled'}
        try:
            await self._request("GET", "/health")
        except SearchIndexError as exc:
            return {'status': 'unhealthy', 'message': f"Meilisearch health check failed: {exc}"}
        return {'status': 'healthy', 'message': 'Meilisearch is accessible'}
