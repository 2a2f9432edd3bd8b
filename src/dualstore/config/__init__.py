"""Typed settings loaded from YAML and DUALSTORE_* environment variables."""

from .settings import (
    DatabaseType,
    HealthConfig,
    LoggingConfig,
    MongoConfig,
    PostgresConfig,
    SearchConfig,
    Settings,
    load_settings,
)

__all__ = [
    'DatabaseType',
    'HealthConfig',
    'LoggingConfig',
    'MongoConfig',
    'PostgresConfig',
    'SearchConfig',
    'Settings',
    'load_settings',
]
