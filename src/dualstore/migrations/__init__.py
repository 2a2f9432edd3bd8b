"""Ordered SQL migrations for the PostgreSQL backend."""

from .runner import MigrationResult, SchemaMigrationRunner

__all__ = ["MigrationResult", "SchemaMigrationRunner"]
