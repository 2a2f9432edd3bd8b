"""Tests for dualstore.core.exceptions"""

import pytest

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


@pytest.mark.parametrize("exc,code", [
    (ValidationError("bad"), ErrorCode.VALIDATION_ERROR),
    (QueryTranslationError("bad"), ErrorCode.QUERY_TRANSLATION_ERROR),
    (StoreConnectionError("down"), ErrorCode.CONNECTION_ERROR),
    (QueryTimeoutError("slow", timeout=30.0), ErrorCode.TIMEOUT),
    (DuplicateRecordError("dup"), ErrorCode.DATABASE_ERROR),
    (TransactionError("tx"), ErrorCode.TRANSACTION_ERROR),
    (MigrationError("mig", filename="001.sql"), ErrorCode.MIGRATION_ERROR),
    (SearchIndexError("search"), ErrorCode.SEARCH_INDEX_ERROR),
    (ConfigurationError("cfg"), ErrorCode.CONFIGURATION_ERROR),
    (RepositoryNotFoundError("x", ["user"]), ErrorCode.REPOSITORY_NOT_FOUND),
    (NotInitializedError(), ErrorCode.NOT_INITIALIZED),
])
def test_error_codes(exc, code):
    assert isinstance(exc, StoreError)
    assert exc.error_code == code


def test_to_dict():
    exc = ValidationError("Missing required fields for users: email", details={'missing': ['email']})
    assert exc.to_dict() == {
        'error_type': 'ValidationError',
        'error_code': 1001,
        'message': "Missing required fields for users: email",
        'details': {'missing': ['email']},
    }


def test_user_message():
    assert StoreConnectionError("pool exhausted").user_message() == "Error 3001: Database unavailable"


def test_extra_attributes():
    assert QueryTimeoutError("slow", timeout=2.5).timeout == 2.5
    assert MigrationError("failed", filename="002_x.sql").filename == "002_x.sql"
    not_found = RepositoryNotFoundError("widget", ["user", "message"])
    assert "user, message" in str(not_found)
    assert not_found.details == {'name': 'widget', 'available': ['user', 'message']}


def test_details_default_to_empty():
    assert StoreError("x").details == {}
