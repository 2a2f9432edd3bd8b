"""Tests for dualstore.manager.DatabaseManager"""

from unittest.mock import AsyncMock, patch

import pytest
from prometheus_client import CollectorRegistry

from dualstore.config.settings import DatabaseType, Settings
from dualstore.core.exceptions import NotInitializedError, RepositoryNotFoundError, StoreConnectionError
from dualstore.manager import REPOSITORY_CLASSES, DatabaseManager
from dualstore.observability.metrics import MetricsCollector
from dualstore.persistence import MessageRepository, UserRepository


class TestInitialize:
    async def test_builds_every_repository(self, manager):
        assert manager.is_initialized
        assert manager.get_repository_names() == list(REPOSITORY_CLASSES)
        assert isinstance(manager.get_repository("user"), UserRepository)
        assert manager.get_database_type() == "mongodb"

    async def test_idempotent(self, manager, adapter):
        before = manager.get_repository("user")
        adapter.connect = AsyncMock()
        await manager.initialize()
        adapter.connect.assert_not_called()
        assert manager.get_repository("user") is before

    async def test_selects_adapter_from_settings(self, store_factory):
        fake = store_factory(DatabaseType.POSTGRESQL)
        settings = Settings(environment="test", database_type="postgresql")
        with patch("dualstore.manager.create_adapter", return_value=fake) as factory:
            db = DatabaseManager(settings)
            await db.initialize()
        factory.assert_called_once_with(settings, None)
        assert db.get_adapter() is fake
        assert db.get_database_type() == "postgresql"

    async def test_connect_failure_propagates(self, settings, store_factory):
        adapter = store_factory()
        adapter.connect = AsyncMock(side_effect=StoreConnectionError("refused"))
        db = DatabaseManager(settings, adapter=adapter)
        with pytest.raises(StoreConnectionError):
            await db.initialize()
        assert not db.is_initialized

    async def test_service_info_metric(self, settings, adapter):
        registry = CollectorRegistry()
        db = DatabaseManager(settings, adapter=adapter, metrics=MetricsCollector(registry=registry))
        await db.initialize()
        info = registry.get_sample_value(
            "dualstore_service_info",
            {"service": "dualstore", "version": settings.version, "backend": "mongodb"},
        )
        assert info == 1.0


class TestAccessors:
    def test_uninitialized_access_raises(self, settings, adapter):
        db = DatabaseManager(settings, adapter=adapter)
        with pytest.raises(NotInitializedError, match="Available repositories: user, message, conversation") as exc_info:
            db.get_repository("user")
        assert all(name in str(exc_info.value) for name in REPOSITORY_CLASSES)
        with pytest.raises(NotInitializedError):
            db.get_adapter()
        assert not db.is_connected()

    def test_unknown_repository_lists_available(self, manager):
        with pytest.raises(RepositoryNotFoundError) as exc_info:
            manager.get_repository("widget")
        assert "user" in exc_info.value.details["available"]
        assert exc_info.value.name == "widget"

    async def test_searchable_repositories_share_the_indexer(self, search_manager, indexer):
        messages = search_manager.get_repository("message")
        assert isinstance(messages, MessageRepository)
        assert messages.indexer is indexer
        assert search_manager.get_search_indexer() is indexer


class TestHealthAndLifecycle:
    async def test_health_check(self, manager):
        health = await manager.health_check()
        assert health['status'] == "healthy"
        assert health['databaseType'] == "mongodb"
        assert health['repositoryCount'] == len(REPOSITORY_CLASSES)

    async def test_health_check_uninitialized(self, settings):
        health = await DatabaseManager(settings).health_check()
        assert health['status'] == "error"

    async def test_health_check_after_connection_loss(self, manager, adapter):
        await adapter.disconnect()
        health = await manager.health_check()
        assert health['status'] == "unhealthy"
        assert health['isConnected'] is False

    async def test_disconnect(self, manager, adapter):
        await manager.disconnect()
        assert not adapter.is_connected()
        assert not manager.is_initialized


class TestSearchFanOut:
    async def test_sync_every_searchable_repository(self, search_manager, adapter, meili):
        await search_manager.get_repository("message").create({"conversationId": "c1", "text": "hi"})
        await adapter.create("conversations", {"conversationId": "c1", "user": "u1", "title": "t"})

        results = await search_manager.sync_search_index(batch_size=10)

        assert set(results) == {"message", "conversation", "file"}
        assert results["conversation"]['indexed'] == 1
        assert results["message"]['indexed'] == 0
        assert all(r['success'] for r in results.values())

    async def test_one_failing_repository_does_not_stop_others(self, search_manager):
        search_manager.get_repository("file").sync_search_index = AsyncMock(side_effect=RuntimeError("boom"))
        results = await search_manager.sync_search_index()
        assert results["file"] == {'error': "boom"}
        assert results["message"]['success'] is True

    async def test_sync_without_engine_is_skipped(self, manager):
        results = await manager.sync_search_index()
        assert all(r['skipped'] for r in results.values())

    async def test_stats(self, search_manager):
        stats = await search_manager.get_search_stats()
        assert stats["message"]["numberOfDocuments"] == 3

    async def test_fan_out_requires_initialize(self, settings, adapter):
        with pytest.raises(NotInitializedError):
            await DatabaseManager(settings, adapter=adapter).sync_search_index()
