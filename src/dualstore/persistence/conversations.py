"""Conversations, keyed by conversationId."""

import logging
import re
from collections.abc import Mapping
from typing import Any

from dualstore.adapters.base import Document, QueryOptions
from dualstore.core.exceptions import ValidationError
from dualstore.search.indexer import filter_equals

from .base import utcnow
from .searchable import SearchableRepository

logger = logging.getLogger(__name__)


def _require(value: Any, label: str) -> Any:
    if not value:
        raise ValidationError(f"{label} is required")
    return value


def _with_default_sort(options: QueryOptions | Mapping | None, field: str) -> QueryOptions:
    opts = QueryOptions.coerce(options)
    if not opts.sort:
        opts.sort = [(field, -1)]
    return opts


class ConversationRepository(SearchableRepository):
    collection = "conversations"
    required_fields = ("user",)
    content_fields = ("title", "tags")

    async def find_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        """Most recently updated first."""
        _require(user_id, "User ID")
        return await self.find_many({"user": user_id}, _with_default_sort(options, "updatedAt"))

    async def find_by_title(self, title: str, user_id: str | None = None, options: QueryOptions | Mapping | None = None) -> list[Document]:
        if not title:
            return []
        query: dict[str, Any] = {"title": {"$regex": re.escape(title), "$options": "i"}}
        if user_id:
            query["user"] = user_id
        return await self.find_many(query, options)

    async def get_recent_by_user_id(self, user_id: str, limit: int = 20) -> list[Document]:
        _require(user_id, "User ID")
        return await self.find_many({"user": user_id}, QueryOptions(sort=[("updatedAt", -1)], limit=limit))

    async def count_by_user_id(self, user_id: str) -> int:
        return await self.count({"user": _require(user_id, "User ID")})

    async def update_title(self, conversation_id: str, title: str) -> Document | None:
        if not conversation_id or not title:
            raise ValidationError("Conversation ID and title are required")
        return await self.update_by_id(conversation_id, {"title": title})

    async def update_last_activity(self, conversation_id: str) -> Document | None:
        return await self.update_by_id(_require(conversation_id, "Conversation ID"), {"updatedAt": utcnow()})

    async def set_archived(self, conversation_id: str, archived: bool = True) -> Document | None:
        _require(conversation_id, "Conversation ID")
        return await self.update_by_id(conversation_id, {
            "archived": archived,
            "archivedAt": utcnow() if archived else None,
        })

    async def set_pinned(self, conversation_id: str, pinned: bool = True) -> Document | None:
        _require(conversation_id, "Conversation ID")
        return await self.update_by_id(conversation_id, {
            "pinned": pinned,
            "pinnedAt": utcnow() if pinned else None,
        })

    async def get_pinned_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        _require(user_id, "User ID")
        return await self.find_many({"user": user_id, "pinned": True}, _with_default_sort(options, "pinnedAt"))

    async def get_archived_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        _require(user_id, "User ID")
        return await self.find_many({"user": user_id, "archived": True}, _with_default_sort(options, "archivedAt"))

    async def get_active_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        _require(user_id, "User ID")
        return await self.find_many(
            {"user": user_id, "archived": {"$ne": True}},
            _with_default_sort(options, "updatedAt"),
        )

    async def search_conversations(self, term: str, user_id: str | None = None, options: Mapping[str, Any] | None = None) -> list[Document]:
        """Engine search scoped to a user when available, else a title match."""
        if not term:
            return []
        options = dict(options or {})
        if self.search_enabled:
            search_options = {'limit': options.get("limit") or 20, 'offset': options.get("offset") or 0}
            if user_id:
                search_options['filter'] = filter_equals("user", user_id)
            hits = await self.search(term, search_options)
            if hits is not None:
                return hits
            logger.warning("Search engine unavailable, falling back to database search for conversations")
        return await self.find_by_title(term, user_id, QueryOptions(
            sort=[("updatedAt", -1)],
            limit=options.get("limit"),
            skip=options.get("offset"),
        ))

    async def add_tags(self, conversation_id: str, tags: list[str]) -> Document | None:
        """Union ``tags`` into the conversation's tags, preserving order."""
        if not conversation_id or not isinstance(tags, list):
            raise ValidationError("Conversation ID and tags list are required")
        conversation = await self.find_by_id(conversation_id)
        if conversation is None:
            return None
        existing = list(conversation.get("tags") or [])
        merged = existing + [t for t in dict.fromkeys(tags) if t not in existing]
        return await self.update_by_id(conversation_id, {"tags": merged})

    async def remove_tags(self, conversation_id: str, tags: list[str]) -> Document | None:
        if not conversation_id or not isinstance(tags, list):
            raise ValidationError("Conversation ID and tags list are required")
        conversation = await self.find_by_id(conversation_id)
        if conversation is None:
            return None
        remaining = [t for t in conversation.get("tags") or [] if t not in tags]
        return await self.update_by_id(conversation_id, {"tags": remaining})

    async def get_user_stats(self, user_id: str) -> dict[str, Any]:
        _require(user_id, "User ID")
        total = await self.count({"user": user_id})
        if not total:
            return {
                'totalConversations': 0,
                'pinnedCount': 0,
                'archivedCount': 0,
                'activeCount': 0,
                'oldestConversation': None,
                'newestConversation': None,
            }
        pinned = await self.count({"user": user_id, "pinned": True})
        archived = await self.count({"user": user_id, "archived": True})
        bounds = await self.aggregate([
            {"$match": {"user": user_id}},
            {"$group": {
                "_id": None,
                "oldestConversation": {"$min": "$createdAt"},
                "newestConversation": {"$max": "$updatedAt"},
            }},
        ])
        row = bounds[0] if bounds else {}
        return {
            'totalConversations': total,
            'pinnedCount': pinned,
            'archivedCount': archived,
            'activeCount': total - archived,
            'oldestConversation': row.get("oldestConversation"),
            'newestConversation': row.get("newestConversation"),
        }
