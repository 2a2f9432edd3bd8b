"""Adapter factory: maps the configured backend discriminator to an adapter."""

from typing import Callable

from dualstore.config.settings import DatabaseType, Settings
from dualstore.core.exceptions import ConfigurationError
from dualstore.core.structured_logger import get_logger
from dualstore.observability.metrics import MetricsCollector

from .base import StoreAdapter
from .document import DocumentStoreAdapter
from .relational import RelationalStoreAdapter

logger = get_logger("AdapterRegistry")


def create_document_adapter(settings: Settings, metrics: MetricsCollector | None = None) -> StoreAdapter:
    """Return a MongoDB adapter for *settings*."""
    logger.info("Creating DocumentStoreAdapter", database=settings.mongo.database)
    return DocumentStoreAdapter(settings.mongo, metrics=metrics)


def create_relational_adapter(settings: Settings, metrics: MetricsCollector | None = None) -> StoreAdapter:
    """Return a PostgreSQL adapter; migrations and monitors are off under test."""
    run_migrations = settings.postgres.run_migrations and not settings.is_test
    logger.info(
        "Creating RelationalStoreAdapter",
        host=settings.postgres.host,
        database=settings.postgres.database,
        run_migrations=run_migrations,
    )
    return RelationalStoreAdapter(
        settings.postgres,
        run_migrations=run_migrations,
        metrics=metrics,
        enable_monitoring=settings.is_production,
    )


ADAPTER_FACTORIES: dict[DatabaseType, Callable[[Settings, MetricsCollector | None], StoreAdapter]] = {
    DatabaseType.MONGODB: create_document_adapter,
    DatabaseType.POSTGRESQL: create_relational_adapter,
}


def create_adapter(settings: Settings, metrics: MetricsCollector | None = None) -> StoreAdapter:
    factory = ADAPTER_FACTORIES.get(settings.database_type)
    if factory is None:
        raise ConfigurationError(
            f"Unsupported database type: {settings.database_type}",
            details={'supported': [t.value for t in ADAPTER_FACTORIES]},
        )
    return factory(settings, metrics)
