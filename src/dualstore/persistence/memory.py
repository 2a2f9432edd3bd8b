"""Per-user memory entries: free-text notes with optional metadata."""

import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from dualstore.adapters.base import Document, QueryOptions

from .base import BaseRepository, raise_for_errors

NEWEST_FIRST = [("createdAt", -1)]


class MemoryEntryRepository(BaseRepository):
    collection = "memoryentries"

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        errors = []
        if operation == "create":
            errors = [
                f"{field} is required and must be a string"
                for field in ("user", "content")
                if not isinstance(data.get(field), str) or not data.get(field)
            ]
        elif "content" in data and (not isinstance(data["content"], str) or not data["content"]):
            errors.append("content must be a non-empty string")
        if data.get("metadata") is not None and not isinstance(data["metadata"], Mapping):
            errors.append("metadata must be an object")
        raise_for_errors(errors, self.collection)

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if operation == "create" and record.get("metadata") is None:
            record["metadata"] = {}
        return record

    async def find_by_user(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options or QueryOptions(sort=NEWEST_FIRST))

    async def find_recent_by_user(self, user_id: str, limit: int = 10) -> list[Document]:
        return await self.find_many({"user": user_id}, QueryOptions(sort=NEWEST_FIRST, limit=limit))

    async def search_by_content(self, user_id: str, term: str) -> list[Document]:
        """Case-insensitive substring match on content, newest first."""
        if not term:
            return []
        query = {"user": user_id, "content": {"$regex": re.escape(term), "$options": "i"}}
        return await self.find_many(query, QueryOptions(sort=NEWEST_FIRST))

    async def find_by_metadata(self, user_id: str, metadata: Mapping[str, Any]) -> list[Document]:
        """Entries whose metadata contains every key/value pair given.

        Metadata is stored as one JSON value, so matching happens here after
        fetching the user's entries; both backends agree on the result.
        """
        entries = await self.find_by_user(user_id)
        return [
            entry for entry in entries
            if all((entry.get("metadata") or {}).get(key) == value for key, value in metadata.items())
        ]

    async def update_content(self, id: str, content: str) -> Document | None:
        return await self.update_by_id(id, {"content": content})

    async def delete_old_entries(self, user_id: str, older_than: datetime) -> int:
        result = await self.delete_many({"user": user_id, "createdAt": {"$lt": older_than}})
        return result.deleted_count

    async def get_memory_stats(self, user_id: str) -> dict[str, Any]:
        bounds = await self.aggregate([
            {"$match": {"user": user_id}},
            {"$group": {
                "_id": None,
                "totalEntries": {"$sum": 1},
                "oldestEntry": {"$min": "$createdAt"},
                "newestEntry": {"$max": "$createdAt"},
            }},
        ])
        row = bounds[0] if bounds else {}
        total = int(row.get("totalEntries") or 0)
        length = 0
        if total:
            entries = await self.find_many({"user": user_id}, {'projection': ['content']})
            length = sum(len(entry.get("content") or "") for entry in entries)
        return {
            'totalEntries': total,
            'totalContentLength': length,
            'oldestEntry': row.get("oldestEntry"),
            'newestEntry': row.get("newestEntry"),
        }
