"""Cross-collection search over the conversation, message and file repositories."""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from dualstore.adapters.base import Document

from .indexer import filter_equals

if TYPE_CHECKING:
    from dualstore.manager import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
SUGGESTION_MIN_LENGTH = 2
SEARCHABLE_REPOSITORIES = {"conversations": "conversation", "messages": "message", "files": "file"}


class SearchService:
    """
    Search façade used by request handlers.

    Each per-collection search degrades to an empty list on failure so one
    broken collection never empties the combined result.
    """

    def __init__(self, manager: "DatabaseManager") -> None:
        self.manager = manager

    @staticmethod
    def _options(options: dict[str, Any] | None) -> dict[str, Any]:
        options = dict(options or {})
        options["limit"] = options.get("limit") or DEFAULT_LIMIT
        options["offset"] = options.get("offset") or 0
        return options

    async def search_all(self, query: str, options: dict[str, Any] | None = None) -> dict[str, Any]:
        if not query or not query.strip():
            return {'conversations': [], 'messages': [], 'files': [], 'totalResults': 0}
        opts = self._options(options)
        conversations, messages, files = await asyncio.gather(
            self.search_conversations(query, opts),
            self.search_messages(query, opts),
            self.search_files(query, opts),
        )
        return {
            'conversations': conversations,
            'messages': messages,
            'files': files,
            'totalResults': len(conversations) + len(messages) + len(files),
        }

    async def search_conversations(self, query: str, options: dict[str, Any] | None = None) -> list[Document]:
        opts = self._options(options)
        try:
            repo = self.manager.get_repository("conversation")
            return await repo.search_conversations(query, opts.get("userId"), opts)
        except Exception as exc:
            logger.error("Conversation search failed: %s", exc)
            return []

    async def search_messages(self, query: str, options: dict[str, Any] | None = None) -> list[Document]:
        opts = self._options(options)
        try:
            return await self.manager.get_repository("message").search_messages(query, opts)
        except Exception as exc:
            logger.error("Message search failed: %s", exc)
            return []

    async def search_files(self, query: str, options: dict[str, Any] | None = None) -> list[Document]:
        opts = self._options(options)
        try:
            return await self.manager.get_repository("file").search_files(query, opts.get("userId"), opts)
        except Exception as exc:
            logger.error("File search failed: %s", exc)
            return []

    async def search_in_conversation(self, conversation_id: str, query: str, options: dict[str, Any] | None = None) -> list[Document]:
        if not conversation_id or not query:
            return []
        opts = self._options(options)
        opts["conversationId"] = conversation_id
        opts["filter"] = filter_equals("conversationId", conversation_id)
        return await self.search_messages(query, opts)

    async def get_search_suggestions(self, user_id: str | None, partial: str, limit: int = 5) -> list[dict[str, Any]]:
        """Conversation titles matching a partial query."""
        if not partial or len(partial) < SUGGESTION_MIN_LENGTH:
            return []
        try:
            conversations = await self.manager.get_repository("conversation").find_by_title(
                partial, user_id, {'limit': limit}
            )
        except Exception as exc:
            logger.error("Search suggestions failed: %s", exc)
            return []
        return [
            {'type': 'conversation', 'text': c.get("title"), 'id': c["id"]}
            for c in conversations[:limit]
        ]

    async def sync_search_indices(self, batch_size: int = 100) -> dict[str, Any]:
        return await self.manager.sync_search_index(batch_size=batch_size)

    async def get_search_stats(self) -> dict[str, Any]:
        return await self.manager.get_search_stats()

    async def clear_search_indices(self, collections: list[str] | None = None) -> dict[str, dict[str, Any]]:
        results: dict[str, dict[str, Any]] = {}
        indexer = self.manager.get_search_indexer()
        for collection in collections or list(SEARCHABLE_REPOSITORIES):
            if collection not in SEARCHABLE_REPOSITORIES:
                results[collection] = {'status': 'error', 'error': 'Unknown collection'}
                continue
            if indexer is None:
                results[collection] = {'status': 'error', 'error': 'No search indexer available'}
                continue
            outcome = await indexer.clear_index(collection)
            results[collection] = {
                'status': 'success' if outcome else 'error',
                'success': outcome.success,
                'error': outcome.error,
            }
        return results
