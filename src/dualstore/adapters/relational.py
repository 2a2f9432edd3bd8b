"""
Relational Store Adapter
========================

PostgreSQL implementation of the StoreAdapter contract on an asyncpg pool.

Canonical queries are parsed into condition variants and compiled to
parameterized SQL; canonical field and collection names are translated to
snake_case columns and table names on the way in and back on the way out.
Every statement is timed into a rolling metrics window, and a statement
slower than the configured threshold is logged with truncated SQL.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

import asyncpg
from asyncpg.transaction import Transaction

from dualstore.config.settings import DatabaseType, PostgresConfig
from dualstore.core.exceptions import (
    DuplicateRecordError,
    QueryTimeoutError,
    StoreConnectionError,
    StoreError,
    TransactionError,
)
from dualstore.core.structured_logger import get_logger, truncate_sql
from dualstore.migrations.runner import SchemaMigrationRunner
from dualstore.observability.metrics import MetricsCollector

from .base import Document, QueryOptions, StoreAdapter, WriteResult
from .metrics import QueryMetrics
from .naming import (
    ID_FIELD,
    NATIVE_ID_FIELD,
    column_for,
    field_for,
    identifier_column,
    validate_naming,
    with_identifier,
)
from .query import Query, equality_values, parse_query
from .sql import SQLCompiler, Statement

logger = logging.getLogger(__name__)
events = get_logger("RelationalStoreAdapter")


@dataclass
class PgTransaction:
    """Connection-bound transaction handle."""
    connection: asyncpg.Connection
    transaction: Transaction
    released: bool = False


async def _init_connection(conn: asyncpg.Connection) -> None:
    encoder = partial(json.dumps, default=str)
    for typename in ("json", "jsonb"):
        await conn.set_type_codec(typename, encoder=encoder, decoder=json.loads, schema="pg_catalog")


class RelationalStoreAdapter(StoreAdapter):
    """asyncpg-backed adapter with query translation and performance tracking."""

    database_type = DatabaseType.POSTGRESQL

    def __init__(
        self,
        config: PostgresConfig | None = None,
        *,
        run_migrations: bool | None = None,
        migrations_dir: str | Path | None = None,
        metrics: MetricsCollector | None = None,
        enable_monitoring: bool = False,
    ) -> None:
        super().__init__()
        self.config = config or PostgresConfig()
        self.run_migrations = self.config.run_migrations if run_migrations is None else run_migrations
        self.migrations_dir = migrations_dir
        self.metrics = metrics
        self.enable_monitoring = enable_monitoring
        self.query_metrics = QueryMetrics(slow_threshold_ms=self.config.slow_query_threshold_ms)
        self._pool: asyncpg.Pool | None = None
        self._monitor_tasks: list[asyncio.Task] = []
        self._compilers: dict[str, SQLCompiler] = {}

    # ---- Lifecycle ----

    async def connect(self) -> None:
        if self._connected:
            return
        validate_naming()
        cfg = self.config
        try:
            self._pool = await asyncpg.create_pool(
                cfg.build_dsn(),
                min_size=cfg.pool_min,
                max_size=cfg.pool_max,
                max_inactive_connection_lifetime=cfg.idle_timeout_ms / 1000,
                timeout=cfg.connection_timeout_ms / 1000,
                command_timeout=cfg.statement_timeout_ms / 1000 or None,
                server_settings={
                    'application_name': cfg.application_name,
                    'statement_timeout': str(cfg.statement_timeout_ms),
                    'tcp_keepalives_idle': str(cfg.keepalive_idle_s),
                },
                init=_init_connection,
            )
            async with self._pool.acquire(timeout=cfg.connection_timeout_ms / 1000) as conn:
                await conn.fetchval("SELECT 1")
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None
            logger.error("PostgreSQL connection failed: %s", exc)
            raise StoreConnectionError(f"Cannot connect to PostgreSQL: {exc}") from exc

        logger.info("Connected to PostgreSQL at %s:%s/%s", cfg.host, cfg.port, cfg.database)

        if self.run_migrations:
            # Stay disconnected until the schema is current so a retried connect re-runs it.
            try:
                runner = SchemaMigrationRunner(pool=self._pool, migrations_dir=self.migrations_dir)
                result = await runner.run_migrations()
            except BaseException:
                await self._pool.close()
                self._pool = None
                raise
            if self.metrics:
                self.metrics.record_migrations(result.count)

        self._connected = True
        if self.enable_monitoring:
            self.start_monitoring()

    async def disconnect(self) -> None:
        await self.stop_monitoring()
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._connected = False
        logger.info("Disconnected from PostgreSQL")

    async def ping(self) -> bool:
        return await self._execute("fetchval", Statement("SELECT 1", []), operation="ping") == 1

    @property
    def pool(self) -> asyncpg.Pool | None:
        return self._pool

    # ---- Execution ----

    def _compiler(self, collection: str) -> SQLCompiler:
        compiler = self._compilers.get(collection)
        if compiler is None:
            compiler = self._compilers[collection] = SQLCompiler(collection)
        return compiler

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        transaction = self.current_transaction()
        if transaction is not None:
            yield transaction.connection
            return
        if self._pool is None:
            raise StoreConnectionError("PostgreSQL adapter is not connected")
        try:
            conn = await self._pool.acquire(timeout=self.config.connection_timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise StoreConnectionError("Timed out waiting for a pooled connection") from exc
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise StoreConnectionError(f"Cannot acquire connection: {exc}") from exc
        try:
            yield conn
        finally:
            await self._pool.release(conn)

    async def _execute(self, method: str, statement: Statement, *, operation: str, collection: str = "") -> Any:
        """Run one statement with timing, timeout and error translation."""
        timeout = self.config.query_timeout_ms / 1000
        started = time.perf_counter()
        failed = False
        try:
            async with self._connection() as conn:
                return await asyncio.wait_for(
                    getattr(conn, method)(statement.sql, *statement.params), timeout=timeout
                )
        except asyncio.TimeoutError as exc:
            failed = True
            logger.error("%s on %s timed out after %.1fs", operation, collection or "-", timeout)
            raise QueryTimeoutError(
                f"{operation} timed out after {timeout:.1f}s", timeout,
                details={'collection': collection, 'sql': truncate_sql(statement.sql)},
            ) from exc
        except asyncpg.UniqueViolationError as exc:
            failed = True
            logger.warning("%s on %s violated a unique constraint: %s", operation, collection, exc)
            raise DuplicateRecordError(
                f"Duplicate record in {collection}: {exc.detail or exc}",
                details={'collection': collection, 'constraint': exc.constraint_name},
            ) from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            failed = True
            logger.error("%s on %s failed: %s [%s]", operation, collection or "-", exc, truncate_sql(statement.sql))
            raise StoreError(
                f"{operation} on {collection or 'database'} failed: {exc}",
                details={'collection': collection, 'operation': operation},
            ) from exc
        except StoreError:
            failed = True
            raise
        finally:
            elapsed = time.perf_counter() - started
            slow = self.query_metrics.record(elapsed * 1000, statement.sql, statement.params, error=failed)
            if self.metrics:
                self.metrics.record_query("postgresql", operation, elapsed, error=failed, slow=slow)

    # ---- Row mapping ----

    @staticmethod
    def _to_row(collection: str, data: Mapping[str, Any]) -> dict[str, Any]:
        return {column_for(collection, field): value for field, value in data.items()}

    @staticmethod
    def _to_document(collection: str, record: Mapping[str, Any], options: QueryOptions | None = None) -> Document:
        doc: Document = {field_for(column): value for column, value in record.items()}
        identifier = record.get(identifier_column(collection))
        if identifier is not None:
            doc[ID_FIELD] = str(identifier)
            doc[NATIVE_ID_FIELD] = doc[ID_FIELD]
        if options is not None:
            for excluded in options.excluded_fields():
                doc.pop(excluded, None)
        return doc

    def _id_query(self, id: Any) -> dict[str, Any]:
        return {ID_FIELD: str(id)}

    # ---- Reads ----

    async def find_by_id(self, collection: str, id: Any, options: QueryOptions | Mapping | None = None) -> Document | None:
        if id is None:
            return None
        return await self.find_one(collection, self._id_query(id), options)

    async def find_one(self, collection: str, query: Query | None, options: QueryOptions | Mapping | None = None) -> Document | None:
        opts = QueryOptions.coerce(options)
        statement = self._compiler(collection).select(
            query, QueryOptions(sort=opts.sort, limit=1, skip=opts.skip, projection=opts.projection)
        )
        record = await self._execute("fetchrow", statement, operation="find_one", collection=collection)
        return self._to_document(collection, record, opts) if record is not None else None

    async def find_many(self, collection: str, query: Query | None = None, options: QueryOptions | Mapping | None = None) -> list[Document]:
        opts = QueryOptions.coerce(options)
        statement = self._compiler(collection).select(query, opts)
        records = await self._execute("fetch", statement, operation="find_many", collection=collection)
        return [self._to_document(collection, r, opts) for r in records]

    async def count(self, collection: str, query: Query | None = None) -> int:
        statement = self._compiler(collection).count(query)
        return int(await self._execute("fetchval", statement, operation="count", collection=collection))

    async def aggregate(self, collection: str, pipeline: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        statement = self._compiler(collection).aggregate(pipeline)
        records = await self._execute("fetch", statement, operation="aggregate", collection=collection)
        if statement.grouped:
            return [dict(r) for r in records]
        return [self._to_document(collection, r) for r in records]

    # ---- Writes ----

    async def create(self, collection: str, data: Mapping[str, Any]) -> Document:
        row = self._to_row(collection, with_identifier(collection, data))
        statement = self._compiler(collection).insert([row])
        record = await self._execute("fetchrow", statement, operation="create", collection=collection)
        return self._to_document(collection, record)

    async def create_many(self, collection: str, items: Sequence[Mapping[str, Any]]) -> list[Document]:
        if not items:
            return []
        rows = [self._to_row(collection, with_identifier(collection, item)) for item in items]
        statement = self._compiler(collection).insert(rows)
        records = await self._execute("fetch", statement, operation="create_many", collection=collection)
        return [self._to_document(collection, r) for r in records]

    async def update_by_id(self, collection: str, id: Any, data: Mapping[str, Any]) -> Document | None:
        statement = self._compiler(collection).update(self._id_query(id), data)
        if statement is None:
            return await self.find_by_id(collection, id)
        record = await self._execute("fetchrow", statement, operation="update_by_id", collection=collection)
        return self._to_document(collection, record) if record is not None else None

    async def update_many(self, collection: str, query: Query | None, data: Mapping[str, Any]) -> WriteResult:
        statement = self._compiler(collection).update(query, data, returning=False)
        if statement is None:
            return WriteResult()
        status = await self._execute("execute", statement, operation="update_many", collection=collection)
        affected = _affected_rows(status)
        return WriteResult(matched_count=affected, modified_count=affected)

    async def delete_by_id(self, collection: str, id: Any) -> bool:
        if id is None:
            return False
        statement = self._compiler(collection).delete(self._id_query(id))
        status = await self._execute("execute", statement, operation="delete_by_id", collection=collection)
        return _affected_rows(status) > 0

    async def delete_many(self, collection: str, query: Query | None) -> WriteResult:
        statement = self._compiler(collection).delete(query)
        status = await self._execute("execute", statement, operation="delete_many", collection=collection)
        return WriteResult(deleted_count=_affected_rows(status))

    async def find_one_and_update(
        self,
        collection: str,
        query: Query,
        update: Mapping[str, Any],
        upsert: bool = False,
    ) -> Document | None:
        """Emulated upsert: look up, then update by id or insert.

        Not atomic. When a concurrent caller inserts first, the unique
        constraint rejects our insert and the winner's row is updated
        instead.
        """
        existing = await self.find_one(collection, query)
        if existing is not None:
            return await self.update_by_id(collection, existing[ID_FIELD], update)
        if not upsert:
            return None

        record = equality_values(parse_query(query))
        record.update(_plain_fields(update))
        try:
            return await self.create(collection, record)
        except DuplicateRecordError:
            existing = await self.find_one(collection, query)
            if existing is None:
                raise
            logger.info("Upsert on %s lost an insert race; updating the existing row", collection)
            return await self.update_by_id(collection, existing[ID_FIELD], update)

    # ---- Transactions ----

    async def start_transaction(self) -> PgTransaction:
        if self._pool is None:
            raise StoreConnectionError("PostgreSQL adapter is not connected")
        try:
            conn = await self._pool.acquire(timeout=self.config.connection_timeout_ms / 1000)
        except (asyncio.TimeoutError, OSError, asyncpg.PostgresError) as exc:
            raise StoreConnectionError(f"Cannot acquire connection for transaction: {exc}") from exc
        transaction = conn.transaction()
        try:
            await transaction.start()
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            await self._pool.release(conn)
            raise TransactionError(f"Failed to start transaction: {exc}") from exc
        return PgTransaction(connection=conn, transaction=transaction)

    async def _release(self, handle: PgTransaction) -> None:
        if not handle.released and self._pool is not None:
            handle.released = True
            await self._pool.release(handle.connection)

    async def commit_transaction(self, transaction: PgTransaction) -> None:
        try:
            await transaction.transaction.commit()
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            logger.error("Transaction commit failed: %s", exc)
            raise TransactionError(f"Commit failed: {exc}") from exc
        finally:
            await self._release(transaction)

    async def rollback_transaction(self, transaction: PgTransaction) -> None:
        try:
            await transaction.transaction.rollback()
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            logger.error("Transaction rollback failed: %s", exc)
            raise TransactionError(f"Rollback failed: {exc}") from exc
        finally:
            await self._release(transaction)

    # ---- Monitoring ----

    def get_pool_stats(self) -> dict[str, int]:
        if self._pool is None:
            return {'size': 0, 'idle': 0, 'active': 0, 'min': 0, 'max': 0}
        size = self._pool.get_size()
        idle = self._pool.get_idle_size()
        return {
            'size': size,
            'idle': idle,
            'active': size - idle,
            'min': self._pool.get_min_size(),
            'max': self._pool.get_max_size(),
        }

    def get_performance_metrics(self) -> dict[str, Any]:
        return self.query_metrics.snapshot(active_connections=self.get_pool_stats()['active'])

    def reset_metrics(self) -> None:
        self.query_metrics.reset()

    def start_monitoring(self) -> None:
        if self._monitor_tasks:
            return
        self._monitor_tasks = [
            asyncio.create_task(self._pool_stats_loop(), name="dualstore-pool-stats"),
            asyncio.create_task(self._metrics_log_loop(), name="dualstore-query-metrics"),
        ]
        logger.info("Performance monitoring started")

    async def stop_monitoring(self) -> None:
        tasks, self._monitor_tasks = self._monitor_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _pool_stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.pool_stats_interval_s)
            stats = self.get_pool_stats()
            if self.metrics:
                self.metrics.update_pool_stats(stats['active'], stats['idle'])
            events.debug("Pool statistics", **stats)

    async def _metrics_log_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.metrics_log_interval_s)
            events.info("Query performance", **self.get_performance_metrics())
            self.reset_metrics()


def _affected_rows(status: str | None) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


def _plain_fields(update: Mapping[str, Any]) -> dict[str, Any]:
    if not any(k.startswith("$") for k in update):
        return dict(update)
    fields = dict(update.get("$set", {}))
    for field, amount in update.get("$inc", {}).items():
        fields[field] = amount
    return fields
