"""
Shared fixtures for dualstore tests: an in-memory StoreAdapter, a manager
built on it, and a Meilisearch double served through httpx.MockTransport.
"""

import copy
import json
import re
import uuid
from collections.abc import Mapping, Sequence
from typing import Any

import httpx
import pytest

from dualstore.adapters.base import Document, QueryOptions, StoreAdapter, WriteResult
from dualstore.adapters.naming import ID_FIELD, NATIVE_ID_FIELD, get_collection, with_identifier
from dualstore.adapters.query import (
    And,
    Eq,
    Exists,
    Gt,
    Gte,
    In,
    Lt,
    Lte,
    Ne,
    NotIn,
    Or,
    Regex,
    equality_values,
    parse_query,
)
from dualstore.config.settings import DatabaseType, SearchConfig, Settings
from dualstore.core.exceptions import DuplicateRecordError, QueryTranslationError, StoreConnectionError
from dualstore.manager import DatabaseManager
from dualstore.search.indexer import SearchIndexer

# =============================================================================
# IN-MEMORY ADAPTER
# =============================================================================

_MISSING = object()


def _lookup(doc: Mapping[str, Any], field: str) -> Any:
    if field in (ID_FIELD, NATIVE_ID_FIELD):
        return doc.get(ID_FIELD)
    return doc.get(field)


def _sort_key(value: Any) -> tuple:
    return (value is not None, value if value is not None else 0)


def matches(cond, doc: Mapping[str, Any]) -> bool:
    match cond:
        case And(conditions):
            return all(matches(c, doc) for c in conditions)
        case Or(conditions):
            return any(matches(c, doc) for c in conditions)
        case Eq(field, value):
            actual = _lookup(doc, field)
            if isinstance(actual, list) and not isinstance(value, list):
                return value in actual
            return actual == value
        case Ne(field, value):
            return _lookup(doc, field) != value
        case Gt(field, value):
            actual = _lookup(doc, field)
            return actual is not None and actual > value
        case Gte(field, value):
            actual = _lookup(doc, field)
            return actual is not None and actual >= value
        case Lt(field, value):
            actual = _lookup(doc, field)
            return actual is not None and actual < value
        case Lte(field, value):
            actual = _lookup(doc, field)
            return actual is not None and actual <= value
        case In(field, values):
            return _lookup(doc, field) in values
        case NotIn(field, values):
            return _lookup(doc, field) not in values
        case Exists(field, present):
            return (_lookup(doc, field) is not None) == present
        case Regex(field, pattern, case_insensitive):
            actual = _lookup(doc, field)
            flags = re.IGNORECASE if case_insensitive else 0
            return isinstance(actual, str) and re.search(pattern, actual, flags) is not None
    raise AssertionError(f"unexpected condition {cond!r}")


class FakeStoreAdapter(StoreAdapter):
    """StoreAdapter over plain dicts.

    ``unique`` names fields that must be unique per collection, so the
    duplicate-key paths of repositories can be exercised. Transactions
    snapshot every collection and restore the snapshot on rollback.
    """

    def __init__(self, database_type: DatabaseType = DatabaseType.MONGODB, unique: Mapping[str, Sequence[str]] | None = None) -> None:
        super().__init__()
        self.database_type = database_type
        self.unique = {k: tuple(v) for k, v in (unique or {}).items()}
        self.collections: dict[str, dict[str, Document]] = {}
        self.transaction_log: list[str] = []

    # ---- Lifecycle ----

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def ping(self) -> bool:
        if not self._connected:
            raise StoreConnectionError("fake adapter is not connected")
        return True

    # ---- Helpers ----

    def _rows(self, collection: str) -> dict[str, Document]:
        return self.collections.setdefault(collection, {})

    def _select(self, collection: str, query) -> list[Document]:
        condition = parse_query(query)
        return [d for d in self._rows(collection).values() if matches(condition, d)]

    @staticmethod
    def _shape(doc: Document, opts: QueryOptions) -> Document:
        doc = copy.deepcopy(doc)
        included = opts.included_fields()
        if included:
            doc = {k: v for k, v in doc.items() if k in included or k in (ID_FIELD, NATIVE_ID_FIELD)}
        for excluded in opts.excluded_fields():
            doc.pop(excluded, None)
        return doc

    @staticmethod
    def _order(docs: list[Document], opts: QueryOptions) -> list[Document]:
        for field, direction in reversed(opts.sort):
            docs = sorted(docs, key=lambda d: _sort_key(_lookup(d, field)), reverse=direction == -1)
        start = opts.skip or 0
        end = start + opts.limit if opts.limit is not None else None
        return docs[start:end]

    def _check_unique(self, collection: str, doc: Document, ignore: str | None = None) -> None:
        for other_id, other in self._rows(collection).items():
            if other_id == ignore:
                continue
            if other_id == doc[ID_FIELD]:
                raise DuplicateRecordError(f"Duplicate id in {collection}")
            for field in self.unique.get(collection, ()):
                if doc.get(field) is not None and doc.get(field) == other.get(field):
                    raise DuplicateRecordError(f"Duplicate {field} in {collection}")

    @staticmethod
    def _apply(doc: Document, update: Mapping[str, Any]) -> None:
        if not any(k.startswith("$") for k in update):
            update = {"$set": update}
        for op, fields in update.items():
            for field, value in fields.items():
                if field in (ID_FIELD, NATIVE_ID_FIELD):
                    continue
                if op == "$set":
                    doc[field] = value
                elif op == "$unset":
                    doc.pop(field, None)
                elif op == "$inc":
                    doc[field] = (doc.get(field) or 0) + value
                else:
                    raise QueryTranslationError(f"Unsupported update operator {op}")

    # ---- Reads ----

    async def find_by_id(self, collection, id, options=None):
        if id is None:
            return None
        return await self.find_one(collection, {ID_FIELD: str(id)}, options)

    async def find_one(self, collection, query, options=None):
        opts = QueryOptions.coerce(options)
        found = self._order(self._select(collection, query), QueryOptions(sort=opts.sort, limit=1, skip=opts.skip))
        return self._shape(found[0], opts) if found else None

    async def find_many(self, collection, query=None, options=None):
        opts = QueryOptions.coerce(options)
        return [self._shape(d, opts) for d in self._order(self._select(collection, query), opts)]

    async def count(self, collection, query=None):
        return len(self._select(collection, query))

    async def aggregate(self, collection, pipeline):
        docs = list(self._rows(collection).values())
        grouped = None
        for stage in pipeline:
            (op, spec), = stage.items()
            if op == "$match":
                docs = [d for d in docs if matches(parse_query(spec), d)]
            elif op == "$group":
                grouped = self._group(docs, spec)
            elif op == "$sort":
                grouped = self._order(grouped if grouped is not None else docs, QueryOptions(sort=spec))
            elif op == "$limit":
                grouped = (grouped if grouped is not None else docs)[:spec]
            else:
                raise QueryTranslationError(f"Unsupported pipeline stage {op}")
        return copy.deepcopy(grouped if grouped is not None else docs)

    @staticmethod
    def _group(docs: list[Document], spec: Mapping[str, Any]) -> list[dict[str, Any]]:
        key = spec.get("_id")
        buckets: dict[Any, list[Document]] = {}
        for doc in docs:
            bucket = doc.get(key[1:]) if isinstance(key, str) else None
            buckets.setdefault(bucket, []).append(doc)
        results = []
        for bucket, members in buckets.items():
            row: dict[str, Any] = {"_id": bucket}
            for name, acc in spec.items():
                if name == "_id":
                    continue
                (acc_op, arg), = acc.items()
                values = [d.get(arg[1:]) for d in members] if isinstance(arg, str) else []
                present = [v for v in values if v is not None]
                if acc_op == "$sum":
                    row[name] = sum(present) if isinstance(arg, str) else arg * len(members)
                elif acc_op == "$avg":
                    row[name] = sum(present) / len(present) if present else None
                elif acc_op == "$min":
                    row[name] = min(present) if present else None
                elif acc_op == "$max":
                    row[name] = max(present) if present else None
                elif acc_op == "$addToSet":
                    row[name] = list(dict.fromkeys(values))
                elif acc_op == "$push":
                    row[name] = values
            results.append(row)
        return results

    # ---- Writes ----

    def _new_document(self, collection: str, data: Mapping[str, Any]) -> Document:
        record = with_identifier(collection, data)
        spec = get_collection(collection)
        if spec.keyed_by_domain_id:
            identifier = str(record[spec.id_field])
        else:
            identifier = str(record.get(ID_FIELD) or record.get(NATIVE_ID_FIELD) or uuid.uuid4().hex)
        record[ID_FIELD] = identifier
        record[NATIVE_ID_FIELD] = identifier
        return record

    async def create(self, collection, data):
        doc = self._new_document(collection, data)
        self._check_unique(collection, doc)
        self._rows(collection)[doc[ID_FIELD]] = doc
        return copy.deepcopy(doc)

    async def create_many(self, collection, items):
        return [await self.create(collection, item) for item in items]

    async def update_by_id(self, collection, id, data):
        doc = self._rows(collection).get(str(id))
        if doc is None:
            return None
        updated = copy.deepcopy(doc)
        self._apply(updated, data)
        self._check_unique(collection, updated, ignore=doc[ID_FIELD])
        self._rows(collection)[doc[ID_FIELD]] = updated
        return copy.deepcopy(updated)

    async def update_many(self, collection, query, data):
        targets = self._select(collection, query)
        for doc in targets:
            self._apply(doc, data)
        return WriteResult(matched_count=len(targets), modified_count=len(targets))

    async def delete_by_id(self, collection, id):
        if id is None:
            return False
        return self._rows(collection).pop(str(id), None) is not None

    async def delete_many(self, collection, query):
        targets = self._select(collection, query)
        for doc in targets:
            del self._rows(collection)[doc[ID_FIELD]]
        return WriteResult(deleted_count=len(targets))

    async def find_one_and_update(self, collection, query, update, upsert=False):
        existing = await self.find_one(collection, query)
        if existing is not None:
            return await self.update_by_id(collection, existing[ID_FIELD], update)
        if not upsert:
            return None
        record = equality_values(parse_query(query))
        fields = update if not any(k.startswith("$") for k in update) else {
            **update.get("$set", {}), **update.get("$inc", {})
        }
        record.update(fields)
        return await self.create(collection, record)

    # ---- Transactions ----

    async def start_transaction(self):
        self.transaction_log.append("start")
        return copy.deepcopy(self.collections)

    async def commit_transaction(self, transaction):
        self.transaction_log.append("commit")

    async def rollback_transaction(self, transaction):
        self.transaction_log.append("rollback")
        self.collections = transaction


# =============================================================================
# SHARED FIXTURES
# =============================================================================


@pytest.fixture
def settings():
    return Settings(environment="test")


@pytest.fixture
def store_factory():
    """FakeStoreAdapter class, for tests that need an unconnected or typed store."""
    return FakeStoreAdapter


@pytest.fixture
async def adapter():
    store = FakeStoreAdapter(unique={"users": ["email"], "sharedlinks": ["shareId"]})
    await store.connect()
    return store


@pytest.fixture
async def manager(settings, adapter):
    db = DatabaseManager(settings, adapter=adapter)
    await db.initialize()
    yield db
    await db.disconnect()


class MeiliDouble:
    """Scripted Meilisearch: records requests and answers by path."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.hits: dict[str, list[dict[str, Any]]] = {}
        self.fail_paths: set[str] = set()
        self.healthy = True

    def bodies(self, method: str, suffix: str) -> list[Any]:
        return [
            json.loads(r.content) if r.content else None
            for r in self.requests
            if r.method == method and r.url.path.endswith(suffix)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if any(path.endswith(p) for p in self.fail_paths):
            return httpx.Response(503, json={"message": "unavailable"})
        if path == "/health":
            if not self.healthy:
                return httpx.Response(503, json={"status": "unavailable"})
            return httpx.Response(200, json={"status": "available"})
        if path.endswith("/search"):
            index = path.split("/")[2]
            hits = self.hits.get(index, [])
            return httpx.Response(200, json={"hits": hits, "estimatedTotalHits": len(hits)})
        if path.endswith("/stats"):
            return httpx.Response(200, json={"numberOfDocuments": 3, "isIndexing": False})
        return httpx.Response(202, json={"taskUid": len(self.requests)})


@pytest.fixture
def meili():
    return MeiliDouble()


@pytest.fixture
async def indexer(adapter, meili):
    client = httpx.AsyncClient(base_url="http://meili.test", transport=httpx.MockTransport(meili.handler))
    search = SearchIndexer(adapter, SearchConfig(enabled=True, host="http://meili.test"), client=client)
    yield search
    await search.close()


@pytest.fixture
async def search_manager(settings, adapter, indexer):
    db = DatabaseManager(settings, adapter=adapter, indexer=indexer)
    await db.initialize()
    yield db
    await db.disconnect()
