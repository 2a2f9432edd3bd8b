"""User accounts."""

import re
from collections.abc import Mapping
from typing import Any

from dualstore.adapters.base import Document, QueryOptions
from dualstore.core.exceptions import ValidationError

from .base import BaseRepository, utcnow


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository(BaseRepository):
    """Users, keyed case-insensitively by email."""

    collection = "users"
    required_fields = ("email",)

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        if operation == "create" and not (data.get("username") or data.get("name")):
            raise ValidationError(
                "Username or name is required for user creation",
                details={'collection': self.collection},
            )

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if isinstance(record.get("email"), str):
            record["email"] = _normalize_email(record["email"])
        if isinstance(record.get("$set", {}).get("email"), str):
            record["$set"]["email"] = _normalize_email(record["$set"]["email"])
        return record

    @staticmethod
    def _required(value: str | None, label: str) -> str:
        if not value:
            raise ValidationError(f"{label} is required")
        return value

    async def find_by_email(self, email: str) -> Document | None:
        return await self.find_one({"email": _normalize_email(self._required(email, "Email"))})

    async def find_by_username(self, username: str) -> Document | None:
        return await self.find_one({"username": self._required(username, "Username")})

    async def email_exists(self, email: str, exclude_user_id: str | None = None) -> bool:
        """True when another user already holds ``email``."""
        query: dict[str, Any] = {"email": _normalize_email(self._required(email, "Email"))}
        if exclude_user_id:
            query["_id"] = {"$ne": str(exclude_user_id)}
        return await self.exists(query)

    async def username_exists(self, username: str, exclude_user_id: str | None = None) -> bool:
        query: dict[str, Any] = {"username": self._required(username, "Username")}
        if exclude_user_id:
            query["_id"] = {"$ne": str(exclude_user_id)}
        return await self.exists(query)

    async def update_last_login(self, user_id: str) -> Document | None:
        return await self.update_by_id(user_id, {"lastLogin": utcnow()})

    async def find_by_role(self, role: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"role": role}, options)

    async def find_active(self, options: QueryOptions | Mapping | None = None) -> list[Document]:
        return await self.find_many({"isActive": {"$ne": False}}, options)

    async def search(self, term: str, options: QueryOptions | Mapping | None = None) -> list[Document]:
        """Case-insensitive substring match on email, username and name."""
        if not term:
            return []
        pattern = re.escape(term)
        query = {"$or": [
            {"email": {"$regex": pattern, "$options": "i"}},
            {"username": {"$regex": pattern, "$options": "i"}},
            {"name": {"$regex": pattern, "$options": "i"}},
        ]}
        return await self.find_many(query, options)
