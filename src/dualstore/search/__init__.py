"""Search engine mirroring and cross-collection search."""

from .indexer import IndexOutcome, SearchIndexer
from .service import SearchService

__all__ = ["IndexOutcome", "SearchIndexer", "SearchService"]
