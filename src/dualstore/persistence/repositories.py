"""
Domain Repositories
===================

Thin repositories over the remaining collections: agents, presets,
sessions, balances, plugin credentials, API keys, roles, permissions,
tools, actions, prompts, banners and prompt groups.
"""

import re
from collections.abc import Mapping
from typing import Any

from dualstore.adapters.base import Document, QueryOptions, WriteResult
from dualstore.core.exceptions import ValidationError

from .base import BaseRepository, raise_for_errors, utcnow

Options = QueryOptions | Mapping | None

_HEX_COLOR = re.compile(r"^#[0-9A-F]{6}$", re.IGNORECASE)


def _title_pattern(title: str) -> dict[str, str]:
    return {"$regex": re.escape(title), "$options": "i"}


class AgentRepository(BaseRepository):
    collection = "agents"
    required_fields = ("name",)

    async def find_by_name(self, name: str) -> Document | None:
        return await self.find_one({"name": name})

    async def find_by_user_id(self, user_id: str, options: Options = None) -> list[Document]:
        return await self.find_many({"author": user_id}, options)

    async def find_public(self, options: Options = None) -> list[Document]:
        return await self.find_many({"isPublic": True}, options)


class PresetRepository(BaseRepository):
    collection = "presets"
    required_fields = ("user", "title")

    async def find_by_user_id(self, user_id: str, options: Options = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_by_title(self, title: str, options: Options = None) -> list[Document]:
        if not title:
            return []
        return await self.find_many({"title": _title_pattern(title)}, options)


class SessionRepository(BaseRepository):
    collection = "sessions"
    required_fields = ("user", "sessionId", "expiresAt")

    async def find_by_user_id(self, user_id: str, options: Options = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_by_session_id(self, session_id: str) -> Document | None:
        return await self.find_one({"sessionId": session_id})

    async def delete_expired(self) -> WriteResult:
        return await self.delete_many({"expiresAt": {"$lt": utcnow()}})


class BalanceRepository(BaseRepository):
    """Token credit balances, one record per user."""

    collection = "balances"
    required_fields = ("user",)

    async def find_by_user_id(self, user_id: str) -> Document | None:
        return await self.find_one({"user": user_id})

    async def update_balance(self, user_id: str, amount: float) -> Document | None:
        """Set the user's credits, creating the balance record if needed."""
        if not user_id or isinstance(amount, bool) or not isinstance(amount, (int, float)):
            raise ValidationError("User ID and numeric amount are required")
        return await self.upsert({"user": user_id}, {"tokenCredits": amount})

    async def adjust_balance(self, user_id: str, delta: float) -> Document | None:
        """Atomically add ``delta`` (negative to spend) to the user's credits."""
        if not user_id or isinstance(delta, bool) or not isinstance(delta, (int, float)):
            raise ValidationError("User ID and numeric delta are required")
        return await self.upsert({"user": user_id}, {"$inc": {"tokenCredits": delta}})


class PluginAuthRepository(BaseRepository):
    collection = "pluginauths"
    required_fields = ("user", "pluginKey", "authField", "value")

    async def find_by_user_id(self, user_id: str, options: Options = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_by_plugin(self, plugin_key: str, options: Options = None) -> list[Document]:
        return await self.find_many({"pluginKey": plugin_key}, options)


class KeyRepository(BaseRepository):
    collection = "keys"
    required_fields = ("user", "name", "value")

    async def find_by_user_id(self, user_id: str, options: Options = None) -> list[Document]:
        return await self.find_many({"user": user_id}, options)

    async def find_by_name(self, name: str) -> Document | None:
        return await self.find_one({"name": name})


class RoleRepository(BaseRepository):
    collection = "roles"
    required_fields = ("name",)

    async def find_by_name(self, name: str) -> Document | None:
        return await self.find_one({"name": name})


class PermissionRepository(BaseRepository):
    collection = "permissions"
    required_fields = ("name",)

    async def find_by_name(self, name: str) -> Document | None:
        return await self.find_one({"name": name})

    async def find_by_role(self, role: str, options: Options = None) -> list[Document]:
        return await self.find_many({"role": role}, options)


class ToolRepository(BaseRepository):
    collection = "tools"
    required_fields = ("name",)

    async def find_by_name(self, name: str) -> Document | None:
        return await self.find_one({"name": name})

    async def find_by_type(self, type: str, options: Options = None) -> list[Document]:
        return await self.find_many({"type": type}, options)


class ActionRepository(ToolRepository):
    collection = "actions"


class PromptRepository(BaseRepository):
    collection = "prompts"
    required_fields = ("title", "prompt")

    async def find_by_title(self, title: str) -> Document | None:
        return await self.find_one({"title": title})

    async def find_by_user_id(self, user_id: str, options: Options = None) -> list[Document]:
        return await self.find_many({"author": user_id}, options)

    async def find_public(self, options: Options = None) -> list[Document]:
        return await self.find_many({"isPublic": True}, options)

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if operation == "create":
            record.setdefault("type", "text")
        return record


class BannerRepository(BaseRepository):
    """Site-wide notices; ``active`` controls whether one is shown."""

    collection = "banners"

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        errors = [
            f"{field} must be a string"
            for field in ("title", "text", "type")
            if field in data and not isinstance(data[field], str)
        ]
        color = data.get("bgColor")
        if color is not None and not (isinstance(color, str) and _HEX_COLOR.match(color)):
            errors.append("bgColor must be a hex color like #1A2B3C")
        raise_for_errors(errors, self.collection)

    async def find_by_type(self, type: str) -> Document | None:
        return await self.find_one({"type": type})

    async def find_active(self, options: Options = None) -> list[Document]:
        return await self.find_many({"active": True}, options)

    async def update_status(self, id: str, active: bool) -> Document | None:
        return await self.update_by_id(id, {"active": bool(active)})


class PromptGroupRepository(BaseRepository):
    """Named, versioned groups of prompts; one version may be marked production."""

    collection = "promptgroups"

    def validate_data(self, data: Mapping[str, Any], operation: str = "create") -> None:
        super().validate_data(data, operation)
        errors = []
        if operation == "create" and (not isinstance(data.get("name"), str) or not data.get("name")):
            errors.append("name is required and must be a string")
        errors.extend(
            f"{field} must be a string"
            for field in ("author", "category")
            if data.get(field) is not None and not isinstance(data[field], str)
        )
        version = data.get("version")
        if version is not None and (isinstance(version, bool) or not isinstance(version, int) or version < 1):
            errors.append("version must be a positive integer")
        raise_for_errors(errors, self.collection)

    def transform_data_for_save(self, data: Mapping[str, Any], operation: str = "create") -> dict[str, Any]:
        record = super().transform_data_for_save(data, operation)
        if operation == "create":
            record.setdefault("version", 1)
        return record

    async def find_by_name(self, name: str, author: str | None = None) -> Document | None:
        query: dict[str, Any] = {"name": name}
        if author:
            query["author"] = author
        return await self.find_one(query)

    async def find_by_author(self, author: str, options: Options = None) -> list[Document]:
        return await self.find_many({"author": author}, options)

    async def find_by_category(self, category: str, options: Options = None) -> list[Document]:
        return await self.find_many({"category": category}, options)

    async def find_production(self, options: Options = None) -> list[Document]:
        return await self.find_many({"productionId": {"$ne": None}}, options)

    async def update_version(self, id: str, version: int) -> Document | None:
        return await self.update_by_id(id, {"version": version})
