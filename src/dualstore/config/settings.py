"""
Pydantic Settings Configuration
=================================

Type-safe configuration for the data-access layer.
Validates every value at startup and fails fast with clear error messages.
"""

from enum import StrEnum
from importlib import metadata
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


def _project_version() -> str:
    """Resolve the project version from package metadata."""
    try:
        return metadata.version("dualstore")
    except metadata.PackageNotFoundError:
        return "0.0.0-dev"


class DatabaseType(StrEnum):
    """Backend discriminator; selects the active adapter at process start."""
    MONGODB = "mongodb"
    POSTGRESQL = "postgresql"


class MongoConfig(BaseModel):
    """Document store connection configuration"""
    uri: str = Field("mongodb://localhost:27017/dualstore", description="MongoDB connection URI")
    database: Optional[str] = Field(None, description="Database name (defaults to the URI's database)")
    server_selection_timeout_ms: int = Field(5000, ge=100, description="Server selection timeout")

    model_config = ConfigDict(extra='allow')


class PostgresConfig(BaseModel):
    """Relational store connection and pool configuration"""
    dsn: Optional[str] = Field(None, description="Full DSN; overrides the individual parts")
    host: str = Field("localhost", description="Database host")
    port: int = Field(5432, ge=1, le=65535, description="Database port")
    database: str = Field("dualstore", description="Database name")
    user: str = Field("postgres", description="Database user")
    password: Optional[str] = Field(None, description="Database password")
    ssl: bool = Field(False, description="Require SSL")
    pool_max: int = Field(20, ge=1, le=1000, description="Maximum pooled connections")
    pool_min: int = Field(2, ge=0, description="Minimum pooled connections")
    idle_timeout_ms: int = Field(30000, ge=0, description="Idle connection lifetime before release")
    connection_timeout_ms: int = Field(30000, ge=1, description="Connect / acquire timeout")
    statement_timeout_ms: int = Field(30000, ge=0, description="Server-side statement_timeout")
    query_timeout_ms: int = Field(30000, ge=1, description="Client-side query timeout race")
    keepalive_idle_s: int = Field(10, ge=1, description="TCP keepalive idle seconds")
    slow_query_threshold_ms: float = Field(1000, ge=0, description="Slow query log threshold")
    application_name: str = Field("dualstore", description="application_name reported to the server")
    run_migrations: bool = Field(True, description="Apply pending migrations on connect")
    pool_stats_interval_s: float = Field(30, gt=0, description="Pool statistics log interval")
    metrics_log_interval_s: float = Field(300, gt=0, description="Query metrics log/reset interval")

    @model_validator(mode='after')
    def validate_pool_bounds(self) -> "PostgresConfig":
        if self.pool_min > self.pool_max:
            raise ValueError(f"pool_min ({self.pool_min}) cannot exceed pool_max ({self.pool_max})")
        return self

    def build_dsn(self) -> str:
        """Return the configured DSN, assembling one from parts when absent."""
        if self.dsn:
            return self.dsn
        auth = quote(self.user, safe="")
        if self.password:
            auth += ":" + quote(self.password, safe="")
        dsn = f"postgresql://{auth}@{self.host}:{self.port}/{self.database}"
        if self.ssl:
            dsn += "?sslmode=require"
        return dsn

    model_config = ConfigDict(extra='allow')


class SearchConfig(BaseModel):
    """External full-text search engine configuration"""
    enabled: bool = Field(False, description="Enable Meilisearch mirroring")
    host: str = Field("http://localhost:7700", description="Meilisearch base URL")
    api_key: Optional[str] = Field(None, description="Meilisearch API key")
    timeout_seconds: float = Field(5.0, gt=0, le=120, description="HTTP timeout per request")
    index_prefix: str = Field("", description="Prefix prepended to every index uid")

    @field_validator('host')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip('/')

    model_config = ConfigDict(extra='allow')


class HealthConfig(BaseModel):
    """Health monitor configuration"""
    interval_seconds: float = Field(30, gt=0, description="Seconds between periodic checks")
    initial_delay_seconds: float = Field(5, ge=0, description="Delay before the first check")
    memory_warning_mb: float = Field(1024, gt=0, description="RSS above which system status is 'warning'")

    model_config = ConfigDict(extra='allow')


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = Field("INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field("json", description="Log format (json, text)")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @field_validator('format')
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ('json', 'text'):
            raise ValueError("Log format must be 'json' or 'text'")
        return v

    model_config = ConfigDict(extra='allow')


class Settings(BaseSettings):
    """
    Main data-access settings with type validation.

    Configuration is loaded from:
    1. YAML config file (if provided)
    2. Environment variables with DUALSTORE_ prefix (override)
    3. Default values (fallback)

    Environment variable mapping uses double-underscore nesting:
      DUALSTORE_DATABASE_TYPE=postgresql
      DUALSTORE_POSTGRES__HOST
      DUALSTORE_POSTGRES__SLOW_QUERY_THRESHOLD_MS
      DUALSTORE_SEARCH__ENABLED
    """

    database_type: DatabaseType = Field(DatabaseType.MONGODB, description="Active backend")
    environment: str = Field("development", description="development, production or test")

    mongo: MongoConfig = Field(default_factory=MongoConfig)
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    version: str = Field(default_factory=_project_version, description="Project version")

    model_config = ConfigDict(
        env_prefix='DUALSTORE_',
        env_nested_delimiter='__',
        extra='allow',
        validate_assignment=True,
    )

    @field_validator('database_type', mode='before')
    @classmethod
    def normalize_database_type(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if v in ('mongo', 'mongodb'):
                return DatabaseType.MONGODB
            if v in ('postgres', 'postgresql', 'pg'):
                return DatabaseType.POSTGRESQL
        return v

    @property
    def is_test(self) -> bool:
        return self.environment.lower() == 'test'

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == 'production'

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> "Settings":
        """
        Load settings from a YAML file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables only."""
        return cls()


def load_settings(config_path: Optional[str | Path] = None) -> Settings:
    """
    Load and validate data-access settings.

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Validated Settings instance
    """
    if config_path:
        return Settings.from_yaml(config_path)
    return Settings.from_env()


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
