"""
Unit tests for RelationalStoreAdapter: statement execution, row mapping,
error translation and transactions against a mocked asyncpg pool.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from dualstore.adapters.metrics import WINDOW_CAPACITY, WINDOW_KEEP, QueryMetrics
from dualstore.adapters.relational import RelationalStoreAdapter, _affected_rows
from dualstore.config.settings import PostgresConfig
from dualstore.core.exceptions import (
    DuplicateRecordError,
    MigrationError,
    QueryTimeoutError,
    StoreConnectionError,
    StoreError,
)
from dualstore.migrations.runner import MigrationResult

NOW = datetime(2024, 5, 1, tzinfo=UTC)


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.fetchrow = AsyncMock(return_value=None)
    connection.fetch = AsyncMock(return_value=[])
    connection.fetchval = AsyncMock(return_value=0)
    connection.execute = AsyncMock(return_value="UPDATE 0")
    tx = MagicMock()
    tx.start = AsyncMock()
    tx.commit = AsyncMock()
    tx.rollback = AsyncMock()
    connection.transaction = MagicMock(return_value=tx)
    return connection


@pytest.fixture
def pool(conn):
    p = MagicMock()
    p.acquire = AsyncMock(return_value=conn)
    p.release = AsyncMock()
    p.get_size.return_value = 5
    p.get_idle_size.return_value = 3
    p.get_min_size.return_value = 2
    p.get_max_size.return_value = 20
    return p


@pytest.fixture
def pg(pool):
    adapter = RelationalStoreAdapter(PostgresConfig(), run_migrations=False)
    adapter._pool = pool
    adapter._connected = True
    return adapter


class TestReads:
    async def test_find_by_id_uses_domain_key_and_maps_columns(self, pg, conn):
        conn.fetchrow.return_value = {
            "message_id": "m1", "conversation_id": "c1", "user_id": "u1", "created_at": NOW,
        }
        doc = await pg.find_by_id("messages", "m1")

        sql, *params = conn.fetchrow.call_args.args
        assert sql == 'SELECT * FROM "messages" WHERE "message_id" = $1 LIMIT $2'
        assert params == ["m1", 1]
        assert doc == {
            "messageId": "m1", "conversationId": "c1", "user": "u1", "createdAt": NOW,
            "id": "m1", "_id": "m1",
        }

    async def test_find_by_id_none_short_circuits(self, pg, conn):
        assert await pg.find_by_id("users", None) is None
        conn.fetchrow.assert_not_called()

    async def test_find_many_excludes_projected_out_fields(self, pg, conn):
        conn.fetch.return_value = [{"id": "u1", "email": "a@b.c", "password": "x"}]
        docs = await pg.find_many("users", {}, {"projection": {"password": 0}})
        assert docs == [{"id": "u1", "_id": "u1", "email": "a@b.c"}]

    async def test_count_returns_int(self, pg, conn):
        conn.fetchval.return_value = 7
        assert await pg.count("users", {"role": "admin"}) == 7

    async def test_grouped_aggregate_keeps_alias_keys(self, pg, conn):
        conn.fetch.return_value = [{"_id": "credit", "total": 12}]
        rows = await pg.aggregate("transactions", [{"$group": {"_id": "$type", "total": {"$sum": "$amount"}}}])
        assert rows == [{"_id": "credit", "total": 12}]

    async def test_ping(self, pg, conn):
        conn.fetchval.return_value = 1
        assert await pg.ping() is True


class TestWrites:
    async def test_create_generates_domain_id(self, pg, conn):
        conn.fetchrow.side_effect = lambda sql, *params: {"title": params[0], "conversation_id": params[1]}
        doc = await pg.create("conversations", {"title": "Hello"})

        sql = conn.fetchrow.call_args.args[0]
        assert sql.startswith('INSERT INTO "conversations" ("title", "conversation_id") VALUES ($1, $2)')
        assert doc["id"] == doc["conversationId"] == doc["_id"]

    async def test_create_many_empty(self, pg, conn):
        assert await pg.create_many("users", []) == []
        conn.fetch.assert_not_called()

    async def test_delete_by_id_reports_missing_row(self, pg, conn):
        conn.execute.return_value = "DELETE 0"
        assert await pg.delete_by_id("users", "nope") is False
        conn.execute.return_value = "DELETE 1"
        assert await pg.delete_by_id("users", "u1") is True

    async def test_update_many_counts_rows(self, pg, conn):
        conn.execute.return_value = "UPDATE 3"
        result = await pg.update_many("users", {"role": "guest"}, {"role": "member"})
        assert result.matched_count == result.modified_count == 3

    async def test_update_by_id_without_assignments_reads_back(self, pg, conn):
        conn.fetchrow.return_value = {"id": "u1", "email": "a@b.c"}
        doc = await pg.update_by_id("users", "u1", {"_id": "ignored"})
        assert doc["email"] == "a@b.c"
        assert conn.fetchrow.call_args.args[0].startswith("SELECT")

    async def test_upsert_inserts_query_equalities(self, pg, conn):
        conn.fetchrow.side_effect = [None, {"id": "b1", "user_id": "u1", "token_credits": 10}]
        doc = await pg.find_one_and_update("balances", {"user": "u1"}, {"tokenCredits": 10}, upsert=True)

        insert_sql, *params = conn.fetchrow.call_args.args
        assert insert_sql.startswith('INSERT INTO "balances" ("user_id", "token_credits")')
        assert params == ["u1", 10]
        assert doc["user"] == "u1"

    async def test_upsert_race_updates_winner(self, pg, conn):
        conn.fetchrow.side_effect = [
            None,
            asyncpg.UniqueViolationError("duplicate key"),
            {"id": "b1", "user_id": "u1", "token_credits": 5},
            {"id": "b1", "user_id": "u1", "token_credits": 10},
        ]
        doc = await pg.find_one_and_update("balances", {"user": "u1"}, {"tokenCredits": 10}, upsert=True)
        assert doc["tokenCredits"] == 10
        assert conn.fetchrow.call_args.args[0].startswith('UPDATE "balances"')

    async def test_find_one_and_update_without_upsert(self, pg, conn):
        assert await pg.find_one_and_update("balances", {"user": "u1"}, {"tokenCredits": 1}) is None


class TestErrorTranslation:
    async def test_unique_violation(self, pg, conn):
        conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")
        with pytest.raises(DuplicateRecordError):
            await pg.create("users", {"email": "a@b.c"})
        assert pg.query_metrics.errors == 1

    async def test_timeout(self, pg, conn):
        conn.fetch.side_effect = asyncio.TimeoutError()
        with pytest.raises(QueryTimeoutError) as exc_info:
            await pg.find_many("users", {})
        assert exc_info.value.details["collection"] == "users"

    async def test_generic_postgres_error(self, pg, conn):
        conn.fetchval.side_effect = asyncpg.PostgresError("boom")
        with pytest.raises(StoreError, match="count on users failed"):
            await pg.count("users")

    async def test_not_connected(self):
        adapter = RelationalStoreAdapter(PostgresConfig(), run_migrations=False)
        with pytest.raises(StoreConnectionError):
            await adapter.count("users")

    async def test_acquire_timeout(self, pg, pool):
        pool.acquire.side_effect = asyncio.TimeoutError()
        with pytest.raises(StoreConnectionError, match="pooled connection"):
            await pg.count("users")

    async def test_connection_released_after_failure(self, pg, pool, conn):
        conn.fetch.side_effect = asyncpg.PostgresError("boom")
        with pytest.raises(StoreError):
            await pg.find_many("users")
        pool.release.assert_awaited_once_with(conn)

    async def test_connect_failure(self):
        adapter = RelationalStoreAdapter(PostgresConfig(), run_migrations=False)
        with patch("dualstore.adapters.relational.asyncpg.create_pool", AsyncMock(side_effect=OSError("refused"))):
            with pytest.raises(StoreConnectionError, match="refused"):
                await adapter.connect()
        assert not adapter.is_connected()


class TestSchemaBootstrap:
    @pytest.fixture
    def boot_pool(self, conn):
        conn.fetchval.return_value = 1
        acquired = MagicMock()
        acquired.__aenter__.return_value = conn
        acquired.__aexit__.return_value = False
        p = MagicMock()
        p.acquire = MagicMock(return_value=acquired)
        p.close = AsyncMock()
        return p

    async def test_connect_runs_migrations(self, boot_pool):
        adapter = RelationalStoreAdapter(PostgresConfig(), run_migrations=True)
        run = AsyncMock(return_value=MigrationResult(applied=["001_initial_schema.sql"]))
        with patch("dualstore.adapters.relational.asyncpg.create_pool", AsyncMock(return_value=boot_pool)), \
                patch("dualstore.adapters.relational.SchemaMigrationRunner.run_migrations", run):
            await adapter.connect()
        run.assert_awaited_once()
        assert adapter.is_connected()

    async def test_failed_migration_leaves_adapter_disconnected(self, boot_pool):
        adapter = RelationalStoreAdapter(PostgresConfig(), run_migrations=True)
        run = AsyncMock(side_effect=[
            MigrationError("syntax error", filename="002.sql"),
            MigrationResult(applied=["002.sql"]),
        ])
        with patch("dualstore.adapters.relational.asyncpg.create_pool", AsyncMock(return_value=boot_pool)), \
                patch("dualstore.adapters.relational.SchemaMigrationRunner.run_migrations", run):
            with pytest.raises(MigrationError):
                await adapter.connect()
            assert not adapter.is_connected()
            assert adapter._pool is None
            boot_pool.close.assert_awaited_once()

            await adapter.connect()
        assert run.await_count == 2
        assert adapter.is_connected()


class TestTransactions:
    async def test_statements_share_the_transaction_connection(self, pg, pool, conn):
        conn.fetchval.return_value = 2

        async def body(tx):
            await pg.count("users")
            await pg.count("messages")
            return "done"

        assert await pg.with_transaction(body) == "done"
        assert pool.acquire.await_count == 1
        conn.transaction.return_value.commit.assert_awaited_once()
        pool.release.assert_awaited_once_with(conn)

    async def test_rollback_on_error(self, pg, pool, conn):
        async def body(tx):
            await pg.count("users")
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await pg.with_transaction(body)
        conn.transaction.return_value.rollback.assert_awaited_once()
        conn.transaction.return_value.commit.assert_not_called()
        pool.release.assert_awaited_once_with(conn)
        assert pg.current_transaction() is None

    async def test_start_failure_releases_connection(self, pg, pool, conn):
        conn.transaction.return_value.start.side_effect = asyncpg.PostgresError("nope")
        with pytest.raises(StoreError):
            await pg.start_transaction()
        pool.release.assert_awaited_once_with(conn)


class TestMonitoring:
    def test_pool_stats(self, pg):
        assert pg.get_pool_stats() == {'size': 5, 'idle': 3, 'active': 2, 'min': 2, 'max': 20}

    def test_pool_stats_without_pool(self):
        adapter = RelationalStoreAdapter(PostgresConfig(), run_migrations=False)
        assert adapter.get_pool_stats()['size'] == 0

    async def test_slow_queries_are_counted(self, pool):
        adapter = RelationalStoreAdapter(PostgresConfig(slow_query_threshold_ms=0), run_migrations=False)
        adapter._pool = pool
        adapter._connected = True
        await adapter.count("users")
        metrics = adapter.get_performance_metrics()
        assert metrics['total_queries'] == 1
        assert metrics['slow_queries'] == 1
        assert metrics['active_connections'] == 2

    async def test_start_and_stop_monitoring(self, pg):
        pg.start_monitoring()
        assert len(pg._monitor_tasks) == 2
        await pg.stop_monitoring()
        assert pg._monitor_tasks == []


class TestQueryMetrics:
    def test_window_is_trimmed(self):
        metrics = QueryMetrics(slow_threshold_ms=10_000)
        for _ in range(WINDOW_CAPACITY + 1):
            metrics.record(1.0, "SELECT 1")
        assert len(metrics.durations_ms) == WINDOW_KEEP
        assert metrics.total_queries == WINDOW_CAPACITY + 1

    def test_reset_keeps_window(self):
        metrics = QueryMetrics()
        metrics.record(4.0, "SELECT 1", error=True)
        metrics.reset()
        assert metrics.snapshot()['errors'] == 0
        assert metrics.average_ms == 4.0


@pytest.mark.parametrize("status,expected", [
    ("UPDATE 3", 3), ("DELETE 0", 0), ("INSERT 0 1", 1), (None, 0), ("", 0), ("BEGIN", 0),
])
def test_affected_rows(status, expected):
    assert _affected_rows(status) == expected
