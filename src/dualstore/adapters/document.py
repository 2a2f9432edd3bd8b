"""
Document Store Adapter
======================

MongoDB implementation of the StoreAdapter contract on pymongo's asyncio
client. The canonical query dialect is the native one, so this adapter is
mostly a pass-through; it still parses every query so unsupported
operators fail the same way on both backends, and it resolves the
canonical ``id`` / ``_id`` keys to each collection's identifier.

Keyed collections (conversations, messages) store their domain id as the
native ``_id`` so both names address the same document.
"""

import logging
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
)

from dualstore.config.settings import DatabaseType, MongoConfig
from dualstore.core.exceptions import (
    DuplicateRecordError,
    QueryTimeoutError,
    StoreConnectionError,
    StoreError,
    TransactionError,
)
from dualstore.observability.metrics import MetricsCollector

from .base import Document, QueryOptions, StoreAdapter, WriteResult
from .naming import ID_FIELD, NATIVE_ID_FIELD, get_collection, validate_naming, with_identifier
from .query import (
    And,
    Condition,
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
    Query,
    Regex,
    equality_values,
    parse_query,
)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "dualstore"

# Reference field -> collection it points at, for list-style populate hints
POPULATE_TARGETS: dict[str, str] = {
    "user": "users",
    "author": "users",
    "conversationId": "conversations",
    "files": "files",
    "agent": "agents",
}

_COMPARISON_OPERATORS = {Ne: "$ne", Gt: "$gt", Gte: "$gte", Lt: "$lt", Lte: "$lte"}


def coerce_object_id(value: Any) -> Any:
    """ObjectId for a valid 24-hex string, the value unchanged otherwise."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        try:
            return ObjectId(value)
        except InvalidId:
            return value
    return value


class DocumentStoreAdapter(StoreAdapter):
    """pymongo-backed adapter; queries pass through with identifier resolution."""

    database_type = DatabaseType.MONGODB

    def __init__(
        self,
        config: MongoConfig | None = None,
        *,
        client: AsyncMongoClient | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        super().__init__()
        self.config = config or MongoConfig()
        self.metrics = metrics
        self._client = client
        self._db = None

    # ---- Lifecycle ----

    async def connect(self) -> None:
        if self._connected:
            return
        validate_naming()
        try:
            if self._client is None:
                self._client = AsyncMongoClient(
                    self.config.uri,
                    serverSelectionTimeoutMS=self.config.server_selection_timeout_ms,
                    tz_aware=True,
                )
            if self.config.database:
                self._db = self._client[self.config.database]
            else:
                self._db = self._client.get_default_database(default=DEFAULT_DATABASE)
            await self._client.admin.command("ping")
        except PyMongoError as exc:
            logger.error("MongoDB connection failed: %s", exc)
            raise StoreConnectionError(f"Cannot connect to MongoDB: {exc}") from exc

        self._connected = True
        logger.info("Connected to MongoDB database %s", self._db.name)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._db = None
        self._connected = False
        logger.info("Disconnected from MongoDB")

    async def ping(self) -> bool:
        with self._errors("ping"):
            result = await self._require_client().admin.command("ping")
        return bool(result.get("ok"))

    def _require_client(self) -> AsyncMongoClient:
        if self._client is None or self._db is None:
            raise StoreConnectionError("MongoDB adapter is not connected")
        return self._client

    def _collection(self, name: str):
        self._require_client()
        return self._db[name]

    def _session(self) -> dict[str, Any]:
        session = self.current_transaction()
        return {'session': session} if session is not None else {}

    @contextmanager
    def _errors(self, operation: str, collection: str = "") -> Iterator[None]:
        """Translate driver errors into the StoreError taxonomy."""
        started = time.perf_counter()
        failed = False
        try:
            yield
        except DuplicateKeyError as exc:
            failed = True
            logger.warning("%s on %s violated a unique index: %s", operation, collection, exc)
            raise DuplicateRecordError(
                f"Duplicate record in {collection}: {exc}",
                details={'collection': collection, 'keyValue': (exc.details or {}).get('keyValue')},
            ) from exc
        except ExecutionTimeout as exc:
            failed = True
            logger.error("%s on %s timed out: %s", operation, collection or "-", exc)
            raise QueryTimeoutError(f"{operation} timed out", 0, details={'collection': collection}) from exc
        except ConnectionFailure as exc:
            failed = True
            logger.error("%s on %s lost the connection: %s", operation, collection or "-", exc)
            raise StoreConnectionError(f"MongoDB unreachable during {operation}: {exc}") from exc
        except PyMongoError as exc:
            failed = True
            logger.error("%s on %s failed: %s", operation, collection or "-", exc)
            raise StoreError(
                f"{operation} on {collection or 'database'} failed: {exc}",
                details={'collection': collection, 'operation': operation},
            ) from exc
        finally:
            if self.metrics:
                self.metrics.record_query("mongodb", operation, time.perf_counter() - started, error=failed)

    # ---- Translation ----

    @staticmethod
    def _native_field(collection: str, field: str) -> str:
        return NATIVE_ID_FIELD if field in (ID_FIELD, NATIVE_ID_FIELD) else field

    @staticmethod
    def _native_value(collection: str, field: str, value: Any) -> Any:
        if field != NATIVE_ID_FIELD or get_collection(collection).keyed_by_domain_id:
            return value
        return coerce_object_id(value)

    def _render(self, collection: str, cond: Condition) -> dict[str, Any]:
        match cond:
            case And(conditions):
                parts = [self._render(collection, c) for c in conditions]
                if not parts:
                    return {}
                return parts[0] if len(parts) == 1 else {"$and": parts}
            case Or(conditions):
                return {"$or": [self._render(collection, c) for c in conditions]}
            case Eq(field, value):
                name = self._native_field(collection, field)
                return {name: self._native_value(collection, name, value)}
            case In(field, values) | NotIn(field, values):
                name = self._native_field(collection, field)
                op = "$in" if isinstance(cond, In) else "$nin"
                return {name: {op: [self._native_value(collection, name, v) for v in values]}}
            case Exists(field, present):
                return {self._native_field(collection, field): {"$exists": present}}
            case Regex(field, pattern, case_insensitive):
                spec = {"$regex": pattern}
                if case_insensitive:
                    spec["$options"] = "i"
                return {field: spec}
            case Ne(field, value) | Gt(field, value) | Gte(field, value) | Lt(field, value) | Lte(field, value):
                name = self._native_field(collection, field)
                return {name: {_COMPARISON_OPERATORS[type(cond)]: self._native_value(collection, name, value)}}
        raise AssertionError(f"unhandled condition {cond!r}")

    def _filter(self, collection: str, query: Query | None) -> dict[str, Any]:
        return self._render(collection, parse_query(query))

    @staticmethod
    def _projection(options: QueryOptions) -> dict[str, int] | None:
        included = options.included_fields()
        if included:
            return {(NATIVE_ID_FIELD if f == ID_FIELD else f): 1 for f in included}
        excluded = options.excluded_fields()
        if excluded:
            return {f: 0 for f in excluded if f not in (ID_FIELD, NATIVE_ID_FIELD)}
        return None

    @staticmethod
    def _to_document(raw: Mapping[str, Any] | None) -> Document | None:
        if raw is None:
            return None
        doc = dict(raw)
        if NATIVE_ID_FIELD in doc:
            doc[NATIVE_ID_FIELD] = str(doc[NATIVE_ID_FIELD])
            doc[ID_FIELD] = doc[NATIVE_ID_FIELD]
        return doc

    @staticmethod
    def _to_native(collection: str, data: Mapping[str, Any]) -> dict[str, Any]:
        spec = get_collection(collection)
        record = with_identifier(collection, data)
        supplied = record.pop(ID_FIELD, None)
        if spec.keyed_by_domain_id:
            record[NATIVE_ID_FIELD] = record[spec.id_field]
        elif record.get(NATIVE_ID_FIELD) or supplied:
            record[NATIVE_ID_FIELD] = coerce_object_id(record.get(NATIVE_ID_FIELD) or supplied)
        return record

    @staticmethod
    def _update_document(data: Mapping[str, Any]) -> dict[str, Any]:
        if not any(k.startswith("$") for k in data):
            data = {"$set": dict(data)}
        update = {}
        for op, fields in data.items():
            cleaned = {k: v for k, v in fields.items() if k not in (ID_FIELD, NATIVE_ID_FIELD)}
            if cleaned:
                update[op] = cleaned
        return update

    # ---- Reads ----

    async def find_by_id(self, collection: str, id: Any, options: QueryOptions | Mapping | None = None) -> Document | None:
        if id is None:
            return None
        return await self.find_one(collection, {NATIVE_ID_FIELD: str(id)}, options)

    async def find_one(self, collection: str, query: Query | None, options: QueryOptions | Mapping | None = None) -> Document | None:
        opts = QueryOptions(**{**vars(QueryOptions.coerce(options)), 'limit': 1})
        docs = await self.find_many(collection, query, opts)
        return docs[0] if docs else None

    async def find_many(self, collection: str, query: Query | None = None, options: QueryOptions | Mapping | None = None) -> list[Document]:
        opts = QueryOptions.coerce(options)
        coll = self._collection(collection)
        with self._errors("find_many", collection):
            cursor = coll.find(self._filter(collection, query), self._projection(opts), **self._session())
            if opts.sort:
                cursor = cursor.sort([
                    (self._native_field(collection, f), DESCENDING if d == -1 else ASCENDING)
                    for f, d in opts.sort
                ])
            if opts.skip:
                cursor = cursor.skip(int(opts.skip))
            if opts.limit:
                cursor = cursor.limit(int(opts.limit))
            raw = await cursor.to_list(None)
        docs = [self._to_document(r) for r in raw]
        if opts.populate:
            await self._populate(docs, opts.populate)
        return docs

    async def _populate(self, docs: list[Document], populate: Sequence[str] | Mapping[str, str]) -> None:
        """Replace reference ids with the referenced documents."""
        targets = dict(populate) if isinstance(populate, Mapping) else {
            f: POPULATE_TARGETS[f] for f in populate if f in POPULATE_TARGETS
        }
        for field, target in targets.items():
            ids: set[str] = set()
            for doc in docs:
                value = doc.get(field)
                if isinstance(value, list):
                    ids.update(str(v) for v in value)
                elif value:
                    ids.add(str(value))
            if not ids:
                continue
            found = await self.find_many(target, {ID_FIELD: {"$in": sorted(ids)}})
            by_id = {d[ID_FIELD]: d for d in found}
            for doc in docs:
                value = doc.get(field)
                if isinstance(value, list):
                    doc[field] = [by_id.get(str(v), v) for v in value]
                elif value:
                    doc[field] = by_id.get(str(value), value)

    async def count(self, collection: str, query: Query | None = None) -> int:
        coll = self._collection(collection)
        with self._errors("count", collection):
            return await coll.count_documents(self._filter(collection, query), **self._session())

    async def aggregate(self, collection: str, pipeline: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        stages = []
        grouped = False
        for stage in pipeline:
            if "$match" in stage:
                stages.append({"$match": self._filter(collection, stage["$match"])})
            else:
                grouped = grouped or "$group" in stage
                stages.append(dict(stage))
        coll = self._collection(collection)
        with self._errors("aggregate", collection):
            cursor = await coll.aggregate(stages, **self._session())
            raw = await cursor.to_list(None)
        return raw if grouped else [self._to_document(r) for r in raw]

    # ---- Writes ----

    async def create(self, collection: str, data: Mapping[str, Any]) -> Document:
        record = self._to_native(collection, data)
        coll = self._collection(collection)
        with self._errors("create", collection):
            result = await coll.insert_one(record, **self._session())
        record[NATIVE_ID_FIELD] = result.inserted_id
        return self._to_document(record)

    async def create_many(self, collection: str, items: Sequence[Mapping[str, Any]]) -> list[Document]:
        if not items:
            return []
        records = [self._to_native(collection, item) for item in items]
        coll = self._collection(collection)
        with self._errors("create_many", collection):
            result = await coll.insert_many(records, **self._session())
        for record, inserted_id in zip(records, result.inserted_ids):
            record[NATIVE_ID_FIELD] = inserted_id
        return [self._to_document(r) for r in records]

    async def update_by_id(self, collection: str, id: Any, data: Mapping[str, Any]) -> Document | None:
        if id is None:
            return None
        update = self._update_document(data)
        if not update:
            return await self.find_by_id(collection, id)
        coll = self._collection(collection)
        with self._errors("update_by_id", collection):
            raw = await coll.find_one_and_update(
                self._filter(collection, {NATIVE_ID_FIELD: str(id)}),
                update,
                return_document=ReturnDocument.AFTER,
                **self._session(),
            )
        return self._to_document(raw)

    async def update_many(self, collection: str, query: Query | None, data: Mapping[str, Any]) -> WriteResult:
        update = self._update_document(data)
        if not update:
            return WriteResult()
        coll = self._collection(collection)
        with self._errors("update_many", collection):
            result = await coll.update_many(self._filter(collection, query), update, **self._session())
        return WriteResult(
            acknowledged=result.acknowledged,
            matched_count=result.matched_count,
            modified_count=result.modified_count,
        )

    async def delete_by_id(self, collection: str, id: Any) -> bool:
        if id is None:
            return False
        coll = self._collection(collection)
        with self._errors("delete_by_id", collection):
            result = await coll.delete_one(self._filter(collection, {NATIVE_ID_FIELD: str(id)}), **self._session())
        return result.deleted_count > 0

    async def delete_many(self, collection: str, query: Query | None) -> WriteResult:
        coll = self._collection(collection)
        with self._errors("delete_many", collection):
            result = await coll.delete_many(self._filter(collection, query), **self._session())
        return WriteResult(acknowledged=result.acknowledged, deleted_count=result.deleted_count)

    async def find_one_and_update(
        self,
        collection: str,
        query: Query,
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> Document | None:
        parsed = parse_query(query)
        native_filter = self._render(collection, parsed)
        native_update = self._update_document(update)
        if upsert:
            on_insert = self._insert_identity(collection, parsed, native_filter)
            if on_insert:
                native_update.setdefault("$setOnInsert", {}).update(on_insert)
        coll = self._collection(collection)
        try:
            with self._errors("find_one_and_update", collection):
                raw = await coll.find_one_and_update(
                    native_filter,
                    native_update,
                    upsert=upsert,
                    return_document=ReturnDocument.AFTER,
                    **self._session(),
                )
        except DuplicateRecordError:
            if not upsert:
                raise
            # A concurrent upsert inserted first; the retry matches its document.
            logger.info("Upsert on %s lost an insert race; retrying as update", collection)
            with self._errors("find_one_and_update", collection):
                raw = await coll.find_one_and_update(
                    native_filter,
                    self._update_document(update),
                    return_document=ReturnDocument.AFTER,
                    **self._session(),
                )
        return self._to_document(raw)

    @staticmethod
    def _insert_identity(collection: str, parsed: And, native_filter: Mapping[str, Any]) -> dict[str, Any]:
        """Identifier fields an upserted keyed document needs beyond its filter."""
        spec = get_collection(collection)
        if not spec.keyed_by_domain_id:
            return {}
        pinned = equality_values(parsed)
        key = pinned.get(spec.id_field) or pinned.get(ID_FIELD) or pinned.get(NATIVE_ID_FIELD)
        key = str(key) if key else with_identifier(collection, {})[spec.id_field]
        identity = {NATIVE_ID_FIELD: key, spec.id_field: key}
        return {k: v for k, v in identity.items() if k not in native_filter}

    # ---- Transactions ----

    async def start_transaction(self) -> Any:
        client = self._require_client()
        session = client.start_session()
        try:
            await session.start_transaction()
        except PyMongoError as exc:
            await session.end_session()
            raise TransactionError(f"Failed to start transaction: {exc}") from exc
        return session

    async def commit_transaction(self, transaction: Any) -> None:
        try:
            await transaction.commit_transaction()
        except PyMongoError as exc:
            logger.error("Transaction commit failed: %s", exc)
            raise TransactionError(f"Commit failed: {exc}") from exc
        finally:
            await transaction.end_session()

    async def rollback_transaction(self, transaction: Any) -> None:
        try:
            await transaction.abort_transaction()
        except PyMongoError as exc:
            logger.error("Transaction abort failed: %s", exc)
            raise TransactionError(f"Rollback failed: {exc}") from exc
        finally:
            await transaction.end_session()
