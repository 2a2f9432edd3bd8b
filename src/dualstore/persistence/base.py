"""
Repository Base
===============

Validated, timestamped CRUD over one collection of a StoreAdapter.
Domain repositories subclass BaseRepository, set ``collection`` and
``required_fields``, and add their own finders on top of the generic ones.

Every method logs adapter failures with operation context and re-raises;
nothing is swallowed here.
"""

import logging
import math
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from dualstore.adapters.base import Document, QueryOptions, StoreAdapter, WriteResult, normalize_sort
from dualstore.adapters.query import Query, equality_values, parse_query
from dualstore.core.exceptions import DuplicateRecordError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10


def utcnow() -> datetime:
    return datetime.now(UTC)


def raise_for_errors(errors: list[str], collection: str) -> None:
    if errors:
        raise ValidationError(
            f"Validation failed: {', '.join(errors)}",
            details={'collection': collection, 'errors': errors},
        )


class BaseRepository:
    """Generic repository bound to one collection."""

    collection: str = ""
    required_fields: tuple[str, ...] = ()

    def __init__(self, adapter: StoreAdapter, collection: str | None = None) -> None:
        self.adapter = adapter
        if collection:
            self.collection = collection
        if not self.collection:
            raise ValueError(f"{type(self).__name__} has no collection name")

    @contextmanager
    def _operation(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except Exception as exc:
            logger.error(
                "%s.%s failed on %s: %s %s",
                type(self).__name__, operation, self.collection, exc, context or "",
            )
            raise

    # ---- Hooks ----

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        """Raise ValidationError when ``data`` breaks the repository's rules.

        Required fields are only enforced on create; updates may be partial.
        """
        if not isinstance(data, Mapping):
            raise ValidationError(
                f"{self.collection} data must be a mapping, got {type(data).__name__}",
                details={'collection': self.collection, 'operation': operation},
            )
        if operation != "create":
            return
        missing = [f for f in self.required_fields if data.get(f) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required fields for {self.collection}: {', '.join(missing)}",
                details={'collection': self.collection, 'missing': missing},
            )

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        """Stamp createdAt/updatedAt on create and refresh updatedAt on update."""
        now = utcnow()
        record = dict(data)
        if operation == "create":
            record.setdefault("createdAt", now)
            record["updatedAt"] = now
        elif any(k.startswith("$") for k in record):
            record["$set"] = {**record.get("$set", {}), "updatedAt": now}
        else:
            record["updatedAt"] = now
        return record

    def transform_data_after_load(self, doc: Document) -> Document:
        return doc

    def _load(self, doc: Document | None) -> Document | None:
        return self.transform_data_after_load(doc) if doc is not None else None

    def _load_many(self, docs: Sequence[Document]) -> list[Document]:
        return [self.transform_data_after_load(d) for d in docs]

    # ---- Reads ----

    async def find_by_id(self, id: Any, options: QueryOptions | Mapping | None = None) -> Document | None:
        with self._operation("find_by_id", id=id):
            return self._load(await self.adapter.find_by_id(self.collection, id, options))

    async def find_one(self, query: Query, options: QueryOptions | Mapping | None = None) -> Document | None:
        with self._operation("find_one"):
            return self._load(await self.adapter.find_one(self.collection, query, options))

    async def find_many(self, query: Query | None = None, options: QueryOptions | Mapping | None = None) -> list[Document]:
        with self._operation("find_many"):
            return self._load_many(await self.adapter.find_many(self.collection, query or {}, options))

    async def count(self, query: Query | None = None) -> int:
        with self._operation("count"):
            return await self.adapter.count(self.collection, query or {})

    async def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        with self._operation("aggregate"):
            return await self.adapter.aggregate(self.collection, pipeline)

    async def exists(self, query: Query) -> bool:
        with self._operation("exists"):
            return await self.adapter.find_one(self.collection, query, {'projection': ['id']}) is not None

    async def paginate(
        self,
        query: Query | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        sort: Any = None,
    ) -> dict[str, Any]:
        """Return one page of matches plus pagination metadata.

        ``total`` comes from a separate count, so it can drift from the page
        contents under concurrent writes.
        """
        if page < 1 or limit < 1:
            raise ValidationError(
                "page and limit must be positive integers",
                details={'page': page, 'limit': limit},
            )
        with self._operation("paginate", page=page, limit=limit):
            order = normalize_sort(sort)
            # LIMIT/OFFSET pages only stay disjoint under a total order.
            if all(name not in ("id", "_id") for name, _ in order):
                order.append(("id", 1))
            options = QueryOptions(sort=order, limit=limit, skip=(page - 1) * limit)
            data = self._load_many(await self.adapter.find_many(self.collection, query or {}, options))
            total = await self.adapter.count(self.collection, query or {})
        return {
            'data': data,
            'pagination': {
                'page': page,
                'limit': limit,
                'total': total,
                'pages': math.ceil(total / limit),
                'hasNext': page * limit < total,
                'hasPrev': page > 1,
            },
        }

    # ---- Writes ----

    async def create(self, data: Mapping[str, Any]) -> Document:
        self.validate_data(data, "create")
        record = self.transform_data_for_save(data, "create")
        with self._operation("create"):
            return self._load(await self.adapter.create(self.collection, record))

    async def create_many(self, items: Sequence[Mapping[str, Any]]) -> list[Document]:
        for item in items:
            self.validate_data(item, "create")
        records = [self.transform_data_for_save(item, "create") for item in items]
        with self._operation("create_many", count=len(records)):
            return self._load_many(await self.adapter.create_many(self.collection, records))

    async def update_by_id(self, id: Any, data: Mapping[str, Any]) -> Document | None:
        self.validate_data(data, "update")
        record = self.transform_data_for_save(data, "update")
        with self._operation("update_by_id", id=id):
            return self._load(await self.adapter.update_by_id(self.collection, id, record))

    async def update_many(self, query: Query, data: Mapping[str, Any]) -> WriteResult:
        self.validate_data(data, "update")
        record = self.transform_data_for_save(data, "update")
        with self._operation("update_many"):
            return await self.adapter.update_many(self.collection, query, record)

    async def upsert(self, query: Query, data: Mapping[str, Any]) -> Document | None:
        """Update the first match or insert ``query`` equalities merged with ``data``."""
        self.validate_data(data, "update")
        record = self.transform_data_for_save(data, "update")
        with self._operation("upsert"):
            return self._load(
                await self.adapter.find_one_and_update(self.collection, query, record, upsert=True)
            )

    async def delete_by_id(self, id: Any) -> bool:
        with self._operation("delete_by_id", id=id):
            return await self.adapter.delete_by_id(self.collection, id)

    async def delete_many(self, query: Query) -> WriteResult:
        with self._operation("delete_many"):
            return await self.adapter.delete_many(self.collection, query)

    async def find_or_create(self, query: Query, data: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """Return ``{'record': ..., 'created': bool}``.

        When a concurrent caller creates the record first and a unique
        constraint rejects ours, the winner's record is returned instead.
        """
        existing = await self.find_one(query)
        if existing is not None:
            return {'record': existing, 'created': False}
        seed = {**equality_values(parse_query(query)), **(data or {})}
        try:
            record = await self.create(seed)
        except DuplicateRecordError:
            existing = await self.find_one(query)
            if existing is None:
                raise
            logger.info("find_or_create on %s resolved a concurrent insert", self.collection)
            return {'record': existing, 'created': False}
        return {'record': record, 'created': True}
