"""
Store Adapter Contract
======================

Abstract interface every backend implements. Repositories depend on this
type only, so swapping MongoDB for PostgreSQL never touches domain code.

All operations are asynchronous. Reads return canonical documents (plain
dicts carrying an ``id`` string plus ``_id``); writes return the
post-write document. Lookups that match nothing return ``None``.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, TypeVar

from dualstore.config.settings import DatabaseType
from dualstore.core.exceptions import TransactionError

from .query import Query

logger = logging.getLogger(__name__)

Document = dict[str, Any]
T = TypeVar("T")

# Transaction bound to the running task: (owning adapter, handle)
_active_transaction: ContextVar[tuple["StoreAdapter", Any] | None] = ContextVar(
    "dualstore_active_transaction", default=None
)


def normalize_sort(sort: Any) -> list[tuple[str, int]]:
    if not sort:
        return []
    items = sort.items() if isinstance(sort, Mapping) else sort
    normalized = []
    for name, direction in items:
        if isinstance(direction, str):
            direction = -1 if direction.lower() in ("desc", "descending", "-1") else 1
        normalized.append((name, -1 if direction == -1 or direction is False else 1))
    return normalized


@dataclass
class QueryOptions:
    """Sort, paging, projection and relation-expansion options for reads.

    ``populate`` is a hint for the document backend only; the relational
    backend ignores it.
    """
    sort: list[tuple[str, int]] = field(default_factory=list)
    limit: int | None = None
    skip: int | None = None
    projection: list[str] | dict[str, int] | None = None
    populate: list[str] | dict[str, str] | None = None

    @classmethod
    def coerce(cls, options: "QueryOptions | Mapping[str, Any] | None") -> "QueryOptions":
        if options is None:
            return cls()
        if isinstance(options, QueryOptions):
            return options
        skip = options.get("skip", options.get("offset"))
        return cls(
            sort=normalize_sort(options.get("sort")),
            limit=options.get("limit"),
            skip=skip,
            projection=options.get("projection", options.get("select")),
            populate=options.get("populate"),
        )

    def __post_init__(self) -> None:
        self.sort = normalize_sort(self.sort)

    def included_fields(self) -> list[str] | None:
        """Fields to keep when the projection is an inclusion list."""
        if self.projection is None:
            return None
        if isinstance(self.projection, Mapping):
            included = [k for k, v in self.projection.items() if v]
            return included or None
        return list(self.projection)

    def excluded_fields(self) -> list[str]:
        if isinstance(self.projection, Mapping):
            return [k for k, v in self.projection.items() if not v]
        return []


@dataclass
class WriteResult:
    """Outcome of a bulk update or delete."""
    acknowledged: bool = True
    matched_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    upserted_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'acknowledged': self.acknowledged,
            'matchedCount': self.matched_count,
            'modifiedCount': self.modified_count,
            'deletedCount': self.deleted_count,
        }


class StoreAdapter(ABC):
    """Abstract base for MongoDB and PostgreSQL adapters."""

    database_type: DatabaseType

    def __init__(self) -> None:
        self._connected = False

    # ---- Lifecycle ----

    @abstractmethod
    async def connect(self) -> None:
        """Open connections; raise StoreConnectionError when unreachable."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release every connection held by the adapter."""

    def is_connected(self) -> bool:
        return self._connected

    def get_type(self) -> str:
        return self.database_type.value

    @abstractmethod
    async def ping(self) -> bool:
        """Issue the cheapest round trip the backend supports."""

    # ---- Reads ----

    @abstractmethod
    async def find_by_id(self, collection: str, id: Any, options: QueryOptions | Mapping | None = None) -> Document | None:
        ...

    @abstractmethod
    async def find_one(self, collection: str, query: Query | None, options: QueryOptions | Mapping | None = None) -> Document | None:
        ...

    @abstractmethod
    async def find_many(self, collection: str, query: Query | None = None, options: QueryOptions | Mapping | None = None) -> list[Document]:
        ...

    @abstractmethod
    async def count(self, collection: str, query: Query | None = None) -> int:
        ...

    @abstractmethod
    async def aggregate(self, collection: str, pipeline: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        ...

    # ---- Writes ----

    @abstractmethod
    async def create(self, collection: str, data: Mapping[str, Any]) -> Document:
        ...

    @abstractmethod
    async def create_many(self, collection: str, items: Sequence[Mapping[str, Any]]) -> list[Document]:
        ...

    @abstractmethod
    async def update_by_id(self, collection: str, id: Any, data: Mapping[str, Any]) -> Document | None:
        """Apply ``data`` (plain fields or ``$set``/``$inc``/``$unset``)."""

    @abstractmethod
    async def update_many(self, collection: str, query: Query | None, data: Mapping[str, Any]) -> WriteResult:
        ...

    @abstractmethod
    async def delete_by_id(self, collection: str, id: Any) -> bool:
        ...

    @abstractmethod
    async def delete_many(self, collection: str, query: Query | None) -> WriteResult:
        ...

    @abstractmethod
    async def find_one_and_update(
        self,
        collection: str,
        query: Query,
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> Document | None:
        """Update the first match, optionally inserting when nothing matches."""

    # ---- Transactions ----

    @abstractmethod
    async def start_transaction(self) -> Any:
        """Begin a transaction and return its opaque handle."""

    @abstractmethod
    async def commit_transaction(self, transaction: Any) -> None:
        """Commit and release the handle."""

    @abstractmethod
    async def rollback_transaction(self, transaction: Any) -> None:
        """Roll back and release the handle."""

    def current_transaction(self) -> Any:
        """Handle bound to the running task by with_transaction, if any."""
        bound = _active_transaction.get()
        if bound is not None and bound[0] is self:
            return bound[1]
        return None

    async def with_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``fn`` inside a transaction.

        Adapter calls made by ``fn`` (directly or through repositories) in
        the same task run on the transaction. Commits on success, rolls
        back on any exception, and always releases the handle.
        """
        transaction = await self.start_transaction()
        token = _active_transaction.set((self, transaction))
        try:
            result = await fn(transaction)
        except BaseException:
            _active_transaction.reset(token)
            try:
                await self.rollback_transaction(transaction)
            except TransactionError as rollback_error:
                logger.error("Rollback after failed transaction body also failed: %s", rollback_error)
            raise
        _active_transaction.reset(token)
        await self.commit_transaction(transaction)
        return result
