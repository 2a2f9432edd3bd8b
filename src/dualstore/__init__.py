"""
dualstore
=========

Database abstraction layer that runs the same repositories over MongoDB or
PostgreSQL, with an optional Meilisearch mirror for full-text search.
"""

from dualstore.config.settings import Settings, load_settings
from dualstore.manager import DatabaseManager

__all__ = [
    "DatabaseManager",
    "Settings",
    "load_settings",
]
