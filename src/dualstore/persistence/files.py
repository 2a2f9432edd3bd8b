"""Uploaded file metadata."""

import re
from collections.abc import Mapping
from typing import Any

from dualstore.adapters.base import Document, QueryOptions
from dualstore.search.indexer import filter_equals

from .searchable import SearchableRepository


class FileRepository(SearchableRepository):
    collection = "files"
    required_fields = ("filename",)
    content_fields = ("filename", "type")

    async def find_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_by_conversation_id(self, conversation_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"conversationId": conversation_id}, options)

    async def find_by_type(self, type: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"type": type}, options)

    async def search_files(self, term: str, user_id: str | None = None, options: Mapping[str, Any] | None = None) -> list[Document]:
        """Engine search when available, otherwise a filename substring match."""
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
        query: dict[str, Any] = {"filename": {"$regex": re.escape(term), "$options": "i"}}
        if user_id:
            query["user"] = user_id
        return await self.find_many(query, QueryOptions(
            sort=[("createdAt", -1)],
            limit=options.get("limit"),
            skip=options.get("offset"),
        ))
