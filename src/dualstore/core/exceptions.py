"""
Custom Exceptions for dualstore
===============================

Structured error handling lets callers react to a failure by type rather
than by parsing strings.

Error Codes:
- 1xxx: Caller errors (invalid data, untranslatable queries)
- 2xxx: Lookup errors (unknown repository, uninitialized manager)
- 3xxx: Backend errors (connectivity, timeouts)
- 4xxx: Execution errors (transactions, migrations, search indexing)
- 5xxx: System errors (internal, configuration)
"""

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Structured error codes for user-friendly messages"""

    # 1xxx: Caller Errors
    VALIDATION_ERROR = 1001
    QUERY_TRANSLATION_ERROR = 1002

    # 2xxx: Lookup Errors
    REPOSITORY_NOT_FOUND = 2001
    NOT_INITIALIZED = 2002

    # 3xxx: Backend Errors
    CONNECTION_ERROR = 3001
    TIMEOUT = 3002

    # 4xxx: Execution Errors
    TRANSACTION_ERROR = 4001
    MIGRATION_ERROR = 4002
    SEARCH_INDEX_ERROR = 4003

    # 5xxx: System Errors
    INTERNAL_ERROR = 5001
    DATABASE_ERROR = 5002
    CONFIGURATION_ERROR = 5003


class StoreError(Exception):
    """Base exception for all data-access errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for structured logging"""
        return {
            'error_type': self.__class__.__name__,
            'error_code': int(self.error_code),
            'message': self.message,
            'details': self.details
        }

    def user_message(self) -> str:
        """Get user-friendly error message based on error code"""
        code_messages = {
            ErrorCode.VALIDATION_ERROR: "Invalid data provided",
            ErrorCode.QUERY_TRANSLATION_ERROR: "Query cannot be expressed for this backend",
            ErrorCode.REPOSITORY_NOT_FOUND: "Unknown repository",
            ErrorCode.NOT_INITIALIZED: "Database layer is not initialized",
            ErrorCode.CONNECTION_ERROR: "Database unavailable",
            ErrorCode.TIMEOUT: "Database operation timed out",
            ErrorCode.TRANSACTION_ERROR: "Transaction failed",
            ErrorCode.MIGRATION_ERROR: "Schema migration failed",
            ErrorCode.SEARCH_INDEX_ERROR: "Search index unavailable",
            ErrorCode.INTERNAL_ERROR: "Internal server error",
            ErrorCode.DATABASE_ERROR: "Database error",
            ErrorCode.CONFIGURATION_ERROR: "Configuration error",
        }
        return f"Error {self.error_code}: {code_messages.get(self.error_code, self.message)}"


class StoreConnectionError(StoreError):
    """Raised when the backend is unreachable or the pool is exhausted"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.CONNECTION_ERROR, details)


class QueryTimeoutError(StoreError):
    """Raised when a query loses the race against its timeout"""

    def __init__(self, message: str, timeout: float, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.TIMEOUT, details)
        self.timeout = timeout


class DuplicateRecordError(StoreError):
    """Raised when a write violates a backend uniqueness constraint"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.DATABASE_ERROR, details)


class ValidationError(StoreError):
    """Raised when caller-supplied data fails repository rules"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, details)


class QueryTranslationError(StoreError):
    """Raised when a query shape cannot be expressed in SQL"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.QUERY_TRANSLATION_ERROR, details)


class TransactionError(StoreError):
    """Raised when starting, committing or rolling back a transaction fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.TRANSACTION_ERROR, details)


class MigrationError(StoreError):
    """Raised when a migration file fails or a rollback script is missing"""

    def __init__(self, message: str, filename: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.MIGRATION_ERROR, details)
        self.filename = filename


class SearchIndexError(StoreError):
    """Raised inside the search indexer; never escapes it"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.SEARCH_INDEX_ERROR, details)


class ConfigurationError(StoreError):
    """Raised when settings or the static naming tables are inconsistent"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details)


class RepositoryNotFoundError(StoreError):
    """Raised when an unknown repository name is requested"""

    def __init__(self, name: str, available: list[str]):
        super().__init__(
            f"Repository '{name}' not found. Available repositories: {', '.join(available)}",
            ErrorCode.REPOSITORY_NOT_FOUND,
            {'name': name, 'available': available},
        )
        self.name = name


class NotInitializedError(StoreError):
    """Raised when the database manager is used before initialize()"""

    def __init__(self, message: str = "Database manager not initialized. Call initialize() first."):
        super().__init__(message, ErrorCode.NOT_INITIALIZED)
