"""Chat messages, keyed by messageId and mirrored into the search engine."""

import logging
import re
from collections.abc import Mapping
from typing import Any

from dualstore.adapters.base import Document, QueryOptions, WriteResult
from dualstore.core.exceptions import ValidationError

from .base import utcnow
from .searchable import SearchableRepository

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20


def _require(value: Any, label: str) -> Any:
    if not value:
        raise ValidationError(f"{label} is required")
    return value


class MessageRepository(SearchableRepository):
    collection = "messages"
    required_fields = ("conversationId",)
    content_fields = ("text", "content")

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        if operation == "create" and not (data.get("text") or data.get("content")):
            raise ValidationError(
                "Message text or content is required",
                details={'collection': self.collection},
            )

    async def find_by_conversation_id(self, conversation_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        _require(conversation_id, "Conversation ID")
        opts = QueryOptions.coerce(options)
        if not opts.sort:
            opts.sort = [("createdAt", 1)]
        return await self.find_many({"conversationId": conversation_id}, opts)

    async def find_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"user": _require(user_id, "User ID")}, options)

    async def find_by_parent_id(self, parent_message_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"parentMessageId": _require(parent_message_id, "Parent message ID")}, options)

    async def get_latest_by_conversation_id(self, conversation_id: str, limit: int = 50) -> list[Document]:
        """Most recent messages first."""
        _require(conversation_id, "Conversation ID")
        return await self.find_many(
            {"conversationId": conversation_id},
            QueryOptions(sort=[("createdAt", -1)], limit=limit),
        )

    async def count_by_conversation_id(self, conversation_id: str) -> int:
        return await self.count({"conversationId": _require(conversation_id, "Conversation ID")})

    async def delete_by_conversation_id(self, conversation_id: str) -> WriteResult:
        return await self.delete_many({"conversationId": _require(conversation_id, "Conversation ID")})

    async def find_with_files(self, conversation_id: str | None = None, options: QueryOptions | Mapping | None = None) -> list[Document]:
        query: dict[str, Any] = {"files": {"$exists": True, "$ne": []}}
        if conversation_id:
            query["conversationId"] = conversation_id
        return await self.find_many(query, options)

    async def search_messages(self, term: str, options: Mapping[str, Any] | None = None) -> list[Document]:
        """Engine search when available, otherwise a database substring match.

        Options: ``conversationId``, ``filter``, ``limit`` and ``offset``.
        """
        if not term:
            return []
        options = dict(options or {})
        if self.search_enabled:
            hits = await self.search(term, {
                'filter': options.get("filter"),
                'limit': options.get("limit") or DEFAULT_SEARCH_LIMIT,
                'offset': options.get("offset") or 0,
            })
            if hits is not None:
                return hits
            logger.warning("Search engine unavailable, falling back to database search for messages")
        return await self.search_by_text(term, options.get("conversationId"), options)

    async def search_by_text(
        self,
        term: str,
        conversation_id: str | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        """Case-insensitive substring match on message text."""
        if not term:
            return []
        query: dict[str, Any] = {"text": {"$regex": re.escape(term), "$options": "i"}}
        if conversation_id:
            query["conversationId"] = conversation_id
        options = options or {}
        return await self.find_many(query, QueryOptions(
            sort=[("createdAt", -1)],
            limit=options.get("limit"),
            skip=options.get("offset"),
        ))

    async def get_conversation_stats(self, conversation_id: str) -> dict[str, Any]:
        _require(conversation_id, "Conversation ID")
        results = await self.aggregate([
            {"$match": {"conversationId": conversation_id}},
            {"$group": {
                "_id": None,
                "totalMessages": {"$sum": 1},
                "totalTokens": {"$sum": "$tokenCount"},
                "uniqueUsers": {"$addToSet": "$user"},
                "firstMessage": {"$min": "$createdAt"},
                "lastMessage": {"$max": "$createdAt"},
            }},
        ])
        if not results or not results[0].get("totalMessages"):
            return {
                'totalMessages': 0,
                'totalTokens': 0,
                'uniqueUserCount': 0,
                'firstMessage': None,
                'lastMessage': None,
            }
        row = results[0]
        return {
            'totalMessages': int(row["totalMessages"]),
            'totalTokens': int(row.get("totalTokens") or 0),
            'uniqueUserCount': len([u for u in row.get("uniqueUsers") or [] if u is not None]),
            'firstMessage': row.get("firstMessage"),
            'lastMessage': row.get("lastMessage"),
        }

    async def update_token_count(self, message_id: str, token_count: int) -> Document | None:
        if not message_id or isinstance(token_count, bool) or not isinstance(token_count, (int, float)):
            raise ValidationError("Message ID and valid token count are required")
        return await self.update_by_id(message_id, {"tokenCount": token_count})

    async def mark_as_edited(self, message_id: str, new_text: str) -> Document | None:
        if not message_id or not new_text:
            raise ValidationError("Message ID and new text are required")
        return await self.update_by_id(message_id, {
            "text": new_text,
            "isEdited": True,
            "editedAt": utcnow(),
        })
