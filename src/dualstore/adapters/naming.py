"""
Collection and Field Naming
===========================

Static lookup tables shared by both adapters:

- canonical collection name -> relational table
- canonical collection name -> identifier field (most collections key on a
  generic ``id``; conversations and messages key on their domain ids)
- canonical field name (camelCase) <-> column name (snake_case)

Names missing from the explicit tables fall back to a deterministic case
transform. ``validate_naming`` runs at adapter startup and refuses to
continue if the tables contradict each other.
"""

import logging
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from dualstore.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ID_FIELD = "id"
NATIVE_ID_FIELD = "_id"


@dataclass(frozen=True)
class CollectionSpec:
    """One logical collection and how each backend stores it."""
    name: str
    table: str
    id_field: str = ID_FIELD

    @property
    def keyed_by_domain_id(self) -> bool:
        return self.id_field != ID_FIELD


COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec
    for spec in (
        CollectionSpec("users", "users"),
        CollectionSpec("conversations", "conversations", id_field="conversationId"),
        CollectionSpec("messages", "messages", id_field="messageId"),
        CollectionSpec("files", "files"),
        CollectionSpec("sessions", "sessions"),
        CollectionSpec("presets", "presets"),
        CollectionSpec("agents", "agents"),
        CollectionSpec("balances", "balances"),
        CollectionSpec("pluginauths", "plugin_auths"),
        CollectionSpec("keys", "keys"),
        CollectionSpec("roles", "roles"),
        CollectionSpec("permissions", "permissions"),
        CollectionSpec("tools", "tools"),
        CollectionSpec("actions", "actions"),
        CollectionSpec("prompts", "prompts"),
        CollectionSpec("tokens", "tokens"),
        CollectionSpec("transactions", "transactions"),
        CollectionSpec("sharedlinks", "shared_links"),
        CollectionSpec("banners", "banners"),
        CollectionSpec("memoryentries", "memory_entries"),
        CollectionSpec("promptgroups", "prompt_groups"),
    )
}

# Canonical field -> column, where the case transform alone is wrong.
FIELD_TO_COLUMN: dict[str, str] = {
    "user": "user_id",
    "userId": "user_id",
    "iconURL": "icon_url",
    "author": "author_id",
}

# Column -> canonical field. Must invert FIELD_TO_COLUMN for every column
# listed there; ``user_id`` reads back as ``user``.
COLUMN_TO_FIELD: dict[str, str] = {
    "user_id": "user",
    "icon_url": "iconURL",
    "author_id": "author",
}

_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def camel_to_snake(name: str) -> str:
    name = _ACRONYM_BOUNDARY.sub(r"\1_\2", name)
    return _WORD_BOUNDARY.sub(r"\1_\2", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def get_collection(name: str) -> CollectionSpec:
    """Look up a collection, synthesizing a spec for unregistered names."""
    spec = COLLECTIONS.get(name)
    if spec is None:
        spec = CollectionSpec(name, camel_to_snake(name))
        logger.debug("Unregistered collection %s mapped to table %s", name, spec.table)
    return spec


def table_for(collection: str) -> str:
    return get_collection(collection).table


def identifier_column(collection: str) -> str:
    spec = get_collection(collection)
    return camel_to_snake(spec.id_field)


def column_for(collection: str, field: str) -> str:
    """Translate a canonical field to its column for one collection."""
    if field in (ID_FIELD, NATIVE_ID_FIELD):
        return identifier_column(collection)
    return _field_column(field)


def _field_column(field: str) -> str:
    return FIELD_TO_COLUMN.get(field) or camel_to_snake(field)


def field_for(column: str) -> str:
    return COLUMN_TO_FIELD.get(column) or snake_to_camel(column)


def with_identifier(collection: str, data: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``data``, generating the domain id for keyed collections."""
    spec = get_collection(collection)
    record = dict(data)
    if spec.keyed_by_domain_id and not record.get(spec.id_field):
        supplied = record.get(ID_FIELD) or record.get(NATIVE_ID_FIELD)
        record[spec.id_field] = str(supplied) if supplied else str(uuid.uuid4())
    return record


def is_safe_identifier(name: str) -> bool:
    return bool(_IDENTIFIER.match(name))


def validate_naming(required: list[str] | None = None) -> None:
    """Startup self-check over the static naming tables.

    Args:
        required: collection names that must be registered explicitly
            (the set the repositories are built on)

    Raises:
        ConfigurationError: when a table collides, a mapping does not
            round-trip, or a required collection is missing
    """
    problems: list[str] = []

    tables: dict[str, str] = {}
    for spec in COLLECTIONS.values():
        if not is_safe_identifier(spec.table):
            problems.append(f"table name {spec.table!r} for {spec.name} is not a plain identifier")
        if spec.table in tables:
            problems.append(f"{spec.name} and {tables[spec.table]} both map to table {spec.table}")
        tables[spec.table] = spec.name

    for field, column in FIELD_TO_COLUMN.items():
        if column not in COLUMN_TO_FIELD and snake_to_camel(column) != field:
            problems.append(f"column {column} (from {field}) has no reverse mapping")
    for column, field in COLUMN_TO_FIELD.items():
        if _field_column(field) != column:
            problems.append(f"field {field} does not map back to column {column}")

    for name in required or []:
        if name not in COLLECTIONS:
            problems.append(f"collection {name} is not registered")

    if problems:
        raise ConfigurationError(
            "Collection naming self-check failed: " + "; ".join(problems),
            details={"problems": problems},
        )
    logger.debug("Naming self-check passed for %d collections", len(COLLECTIONS))
