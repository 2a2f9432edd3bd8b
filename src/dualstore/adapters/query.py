"""
Query Model
===========

Callers express filters in the document dialect: a mapping of canonical
field name to a scalar (equality) or an operator mapping such as
``{"$gt": 5}``, plus top-level ``$and`` / ``$or`` lists. The relational
backend parses that mapping into the closed set of frozen variants below
and matches on them exhaustively; the document backend accepts the same
variants and renders them back into native filters.

    parse_query({"user": "u1", "createdAt": {"$gte": since}})
    -> And((Eq("user", "u1"), Gte("createdAt", since)))
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from dualstore.core.exceptions import QueryTranslationError


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class Ne:
    field: str
    value: Any


@dataclass(frozen=True)
class Gt:
    field: str
    value: Any


@dataclass(frozen=True)
class Gte:
    field: str
    value: Any


@dataclass(frozen=True)
class Lt:
    field: str
    value: Any


@dataclass(frozen=True)
class Lte:
    field: str
    value: Any


@dataclass(frozen=True)
class In:
    field: str
    values: tuple


@dataclass(frozen=True)
class NotIn:
    field: str
    values: tuple


@dataclass(frozen=True)
class Exists:
    field: str
    present: bool = True


@dataclass(frozen=True)
class Regex:
    field: str
    pattern: str
    case_insensitive: bool = False


@dataclass(frozen=True)
class And:
    conditions: tuple


@dataclass(frozen=True)
class Or:
    conditions: tuple


Condition = Union[Eq, Ne, Gt, Gte, Lt, Lte, In, NotIn, Exists, Regex, And, Or]

CONDITION_TYPES = (Eq, Ne, Gt, Gte, Lt, Lte, In, NotIn, Exists, Regex, And, Or)

Query = Mapping[str, Any] | Condition

_COMPARISONS = {
    "$eq": Eq,
    "$ne": Ne,
    "$gt": Gt,
    "$gte": Gte,
    "$lt": Lt,
    "$lte": Lte,
}

SUPPORTED_OPERATORS = frozenset(
    [*_COMPARISONS, "$in", "$nin", "$exists", "$regex", "$options", "$and", "$or"]
)


def is_operator_mapping(value: Any) -> bool:
    """True when value is a non-empty mapping whose keys are all operators."""
    return (
        isinstance(value, Mapping)
        and bool(value)
        and all(isinstance(k, str) and k.startswith("$") for k in value)
    )


def _as_tuple(field: str, op: str, value: Any) -> tuple:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(value)
    raise QueryTranslationError(
        f"Operator {op} on '{field}' expects a list of values",
        details={"field": field, "operator": op},
    )


def _parse_operators(field: str, ops: Mapping[str, Any]) -> list[Condition]:
    conditions: list[Condition] = []
    for op, operand in ops.items():
        if op in _COMPARISONS:
            conditions.append(_COMPARISONS[op](field, operand))
        elif op == "$in":
            conditions.append(In(field, _as_tuple(field, op, operand)))
        elif op == "$nin":
            conditions.append(NotIn(field, _as_tuple(field, op, operand)))
        elif op == "$exists":
            conditions.append(Exists(field, bool(operand)))
        elif op == "$regex":
            options = ops.get("$options", "")
            if not isinstance(operand, str):
                operand = getattr(operand, "pattern", None)
                if operand is None:
                    raise QueryTranslationError(
                        f"$regex on '{field}' must be a string pattern",
                        details={"field": field},
                    )
            unknown = set(options) - {"i"}
            if unknown:
                raise QueryTranslationError(
                    f"Unsupported $regex options {''.join(sorted(unknown))!r} on '{field}'",
                    details={"field": field, "options": options},
                )
            conditions.append(Regex(field, operand, "i" in options))
        elif op == "$options":
            if "$regex" not in ops:
                raise QueryTranslationError(
                    f"$options without $regex on '{field}'", details={"field": field}
                )
        else:
            raise QueryTranslationError(
                f"Unsupported query operator {op} on '{field}'",
                details={"field": field, "operator": op},
            )
    return conditions


def _parse_branches(op: str, branches: Any) -> tuple:
    if not isinstance(branches, (list, tuple)):
        raise QueryTranslationError(f"{op} expects a list of sub-queries", details={"operator": op})
    return tuple(parse_query(branch) for branch in branches)


def parse_query(query: Query | None) -> And:
    """Parse a document-dialect query into a top-level conjunction.

    Raises QueryTranslationError for operators outside the supported set
    and for embedded-document equality, which has no portable meaning.
    """
    if query is None:
        return And(())
    if isinstance(query, CONDITION_TYPES):
        return query if isinstance(query, And) else And((query,))
    if not isinstance(query, Mapping):
        raise QueryTranslationError(
            f"Query must be a mapping, got {type(query).__name__}",
            details={"type": type(query).__name__},
        )

    conditions: list[Condition] = []
    for field, value in query.items():
        if field == "$and":
            conditions.append(And(_parse_branches(field, value)))
        elif field == "$or":
            conditions.append(Or(_parse_branches(field, value)))
        elif field.startswith("$"):
            raise QueryTranslationError(
                f"Unsupported top-level operator {field}", details={"operator": field}
            )
        elif isinstance(value, CONDITION_TYPES):
            raise QueryTranslationError(
                f"Condition objects cannot be nested under field '{field}'",
                details={"field": field},
            )
        elif is_operator_mapping(value):
            conditions.extend(_parse_operators(field, value))
        elif isinstance(value, Mapping):
            raise QueryTranslationError(
                f"Embedded document equality on '{field}' is not supported",
                details={"field": field},
            )
        else:
            conditions.append(Eq(field, value))
    return And(tuple(conditions))


def equality_values(condition: Condition) -> dict[str, Any]:
    """Collect field values pinned by top-level equality predicates.

    Used when an upsert has to build a new record out of its query.
    """
    values: dict[str, Any] = {}
    if isinstance(condition, Eq):
        values[condition.field] = condition.value
    elif isinstance(condition, And):
        for sub in condition.conditions:
            values.update(equality_values(sub))
    return values


def referenced_fields(condition: Condition) -> set[str]:
    match condition:
        case And(conditions) | Or(conditions):
            fields: set[str] = set()
            for sub in conditions:
                fields |= referenced_fields(sub)
            return fields
        case _:
            return {condition.field}
