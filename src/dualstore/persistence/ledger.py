"""Auth tokens, credit/debit transactions and shared conversation links."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from dualstore.adapters.base import Document, QueryOptions, WriteResult

from .base import BaseRepository, raise_for_errors, utcnow

TRANSACTION_TYPES = ("credit", "debit")
MAX_SHARE_TITLE_LENGTH = 500


class TokenRepository(BaseRepository):
    """Verification and reset tokens with an expiry."""

    collection = "tokens"

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        if operation != "create":
            return
        errors = [
            f"{field} is required and must be a string"
            for field in ("user", "token", "type")
            if not isinstance(data.get(field), str) or not data.get(field)
        ]
        if not isinstance(data.get("expiresAt"), datetime):
            errors.append("expiresAt is required and must be a datetime")
        raise_for_errors(errors, self.collection)

    async def find_by_token(self, token: str) -> Document | None:
        return await self.find_one({"token": token})

    async def find_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_valid(self, user_id: str, type: str | None = None) -> list[Document]:
        """Unexpired tokens for a user, optionally of one type."""
        query: dict[str, Any] = {"user": user_id, "expiresAt": {"$gt": utcnow()}}
        if type:
            query["type"] = type
        return await self.find_many(query, QueryOptions(sort=[("createdAt", -1)]))

    async def delete_expired(self) -> int:
        result = await self.delete_many({"expiresAt": {"$lt": utcnow()}})
        return result.deleted_count


class TransactionRepository(BaseRepository):
    """Append-only credit/debit entries; balances are derived by summing."""

    collection = "transactions"

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        if operation != "create":
            return
        errors = []
        if not isinstance(data.get("user"), str) or not data.get("user"):
            errors.append("user is required and must be a string")
        try:
            float(data["amount"])
        except (KeyError, TypeError, ValueError):
            errors.append("amount is required and must be a valid number")
        if data.get("type") not in TRANSACTION_TYPES:
            errors.append('type is required and must be either "credit" or "debit"')
        if data.get("description") is not None and not isinstance(data["description"], str):
            errors.append("description must be a string")
        raise_for_errors(errors, self.collection)

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if operation == "create":
            record["amount"] = float(record["amount"])
        return record

    async def find_by_user_id(self, user_id: str, type: str | None = None) -> list[Document]:
        query: dict[str, Any] = {"user": user_id}
        if type:
            query["type"] = type
        return await self.find_many(query, QueryOptions(sort=[("createdAt", -1)]))

    async def find_in_date_range(self, start: datetime, end: datetime, user_id: str | None = None) -> list[Document]:
        query: dict[str, Any] = {"createdAt": {"$gte": start, "$lte": end}}
        if user_id:
            query["user"] = user_id
        return await self.find_many(query, QueryOptions(sort=[("createdAt", -1)]))

    async def _totals(self, user_id: str) -> dict[str, dict[str, float]]:
        rows = await self.aggregate([
            {"$match": {"user": user_id}},
            {"$group": {"_id": "$type", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
        ])
        return {row["_id"]: {'total': float(row["total"] or 0), 'count': int(row["count"])} for row in rows}

    async def get_user_balance(self, user_id: str) -> float:
        totals = await self._totals(user_id)
        return totals.get("credit", {}).get("total", 0.0) - totals.get("debit", {}).get("total", 0.0)

    async def get_summary(self, user_id: str) -> dict[str, Any]:
        totals = await self._totals(user_id)
        credits = totals.get("credit", {}).get("total", 0.0)
        debits = totals.get("debit", {}).get("total", 0.0)
        count = sum(t["count"] for t in totals.values())
        last = None
        if count:
            last = await self.find_one({"user": user_id}, QueryOptions(sort=[("createdAt", -1)]))
        return {
            'totalCredits': credits,
            'totalDebits': debits,
            'balance': credits - debits,
            'transactionCount': count,
            'lastTransaction': last,
        }


class SharedLinkRepository(BaseRepository):
    collection = "sharedlinks"

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        errors = []
        if operation == "create":
            errors = [
                f"{field} is required and must be a string"
                for field in ("shareId", "conversationId", "user")
                if not isinstance(data.get(field), str) or not data.get(field)
            ]
        title = data.get("title")
        if title is not None and (not isinstance(title, str) or len(title) > MAX_SHARE_TITLE_LENGTH):
            errors.append(f"title must be a string of at most {MAX_SHARE_TITLE_LENGTH} characters")
        raise_for_errors(errors, self.collection)

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if operation == "create":
            record["isPublic"] = bool(record.get("isPublic", False))
        return record

    async def find_by_share_id(self, share_id: str) -> Document | None:
        return await self.find_one({"shareId": share_id})

    async def find_by_user_id(self, user_id: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_by_conversation_id(self, conversation_id: str) -> list[Document]:
        return await self.find_many({"conversationId": conversation_id})

    async def find_public(self, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"isPublic": True}, options)

    async def update_publicity(self, id: str, is_public: bool) -> Document | None:
        return await self.update_by_id(id, {"isPublic": bool(is_public)})

    async def delete_by_conversation_id(self, conversation_id: str) -> WriteResult:
        return await self.delete_many({"conversationId": conversation_id})
