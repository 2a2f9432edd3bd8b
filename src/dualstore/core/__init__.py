"""Core dualstore module: error taxonomy and structured logging."""

from dualstore.core.exceptions import (
    ConfigurationError,
    DuplicateRecordError,
    ErrorCode,
    MigrationError,
    NotInitializedError,
    QueryTimeoutError,
    QueryTranslationError,
    RepositoryNotFoundError,
    SearchIndexError,
    StoreConnectionError,
    StoreError,
    TransactionError,
    ValidationError,
)
from dualstore.core.structured_logger import configure_logging, get_logger

__all__ = [
    "ConfigurationError",
    "DuplicateRecordError",
    "ErrorCode",
    "MigrationError",
    "NotInitializedError",
    "QueryTimeoutError",
    "QueryTranslationError",
    "RepositoryNotFoundError",
    "SearchIndexError",
    "StoreConnectionError",
    "StoreError",
    "TransactionError",
    "ValidationError",
    "configure_logging",
    "get_logger",
]
