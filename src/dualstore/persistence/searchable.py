"""Repositories whose collection is mirrored into the search engine."""

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from dualstore.adapters.base import Document, StoreAdapter

from .base import BaseRepository

if TYPE_CHECKING:
    from dualstore.search.indexer import IndexOutcome, SearchIndexer

logger = logging.getLogger(__name__)


class SearchableRepository(BaseRepository):
    """
    BaseRepository plus index-sync marker bookkeeping.

    Creating a record, or updating one of ``content_fields``, clears the
    ``indexed`` marker so the next sync picks it up. Writes are also
    mirrored into the indexer straight away; the mirror's outcome is only
    logged, never raised, so a search outage cannot fail a primary write.
    """

    content_fields: tuple[str, ...] = ()

    def __init__(self, adapter: StoreAdapter, indexer: "SearchIndexer | None" = None, collection: str | None = None) -> None:
        super().__init__(adapter, collection)
        self.indexer = indexer

    @property
    def search_enabled(self) -> bool:
        return self.indexer is not None and self.indexer.is_enabled()

    def _touches_content(self, data: Mapping[str, Any]) -> bool:
        fields = set(data)
        for op in ("$set", "$unset", "$inc"):
            fields |= set(data.get(op, {}))
        return bool(fields & set(self.content_fields))

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if operation == "create":
            record["indexed"] = False
            record["indexedAt"] = None
        elif self._touches_content(data):
            marker = {"indexed": False, "indexedAt": None}
            if any(k.startswith("$") for k in record):
                record["$set"] = {**record.get("$set", {}), **marker}
            else:
                record.update(marker)
        return record

    def _report(self, operation: str, outcome: "IndexOutcome") -> None:
        if outcome.skipped:
            return
        if outcome.success:
            logger.debug("Search %s mirrored for %s", operation, self.collection)
        else:
            logger.warning("Search %s failed for %s: %s", operation, self.collection, outcome.error)

    async def create(self, data: Mapping[str, Any]) -> Document:
        doc = await super().create(data)
        if self.search_enabled:
            self._report("index", await self.indexer.index_document(self.collection, doc))
        return doc

    async def update_by_id(self, id: Any, data: Mapping[str, Any]) -> Document | None:
        doc = await super().update_by_id(id, data)
        if doc is not None and self.search_enabled and self._touches_content(data):
            self._report("update", await self.indexer.update_document(self.collection, doc))
        return doc

    async def delete_by_id(self, id: Any) -> bool:
        deleted = await super().delete_by_id(id)
        if deleted and self.search_enabled:
            self._report("delete", await self.indexer.delete_document(self.collection, str(id)))
        return deleted

    async def search(self, term: str, options: Mapping[str, Any] | None = None) -> list[Document] | None:
        """Engine-ranked, hydrated matches; None when the engine is unavailable."""
        if not self.search_enabled:
            return None
        return await self.indexer.search_documents(self.collection, term, options)

    async def sync_search_index(self, batch_size: int = 100) -> dict[str, Any]:
        if self.indexer is None:
            return {'success': False, 'skipped': True, 'indexed': 0}
        return await self.indexer.sync_collection(self.collection, batch_size=batch_size)

    async def get_search_stats(self) -> dict[str, Any] | None:
        if self.indexer is None:
            return None
        return await self.indexer.get_index_stats(self.collection)
