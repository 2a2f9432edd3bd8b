"""
Store adapters
==============

One backend-neutral contract (StoreAdapter) with two implementations:
- document.py:   MongoDB via pymongo's async client
- relational.py: PostgreSQL via asyncpg, queries compiled to SQL by sql.py
"""

from .base import QueryOptions, StoreAdapter, WriteResult
from .document import DocumentStoreAdapter
from .registry import create_adapter
from .relational import RelationalStoreAdapter

__all__ = [
    "DocumentStoreAdapter",
    "QueryOptions",
    "RelationalStoreAdapter",
    "StoreAdapter",
    "WriteResult",
    "create_adapter",
]
