"""
SQL Compiler
============

Turns parsed queries, read options, update documents and aggregation
pipelines into PostgreSQL statements with ``$n`` positional parameters.
Values are only ever bound as parameters; identifiers are validated and
double-quoted.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, assert_never

from dualstore.core.exceptions import QueryTranslationError

from .base import QueryOptions, normalize_sort
from .naming import (
    ID_FIELD,
    NATIVE_ID_FIELD,
    column_for,
    identifier_column,
    is_safe_identifier,
    table_for,
)
from .query import (
    And,
    Condition,
    Eq,
    Exists,
    Gt,
    Gte,
    In,
    Lt,
    Lte,
    Ne,
    NotIn,
    Or,
    Query,
    Regex,
    parse_query,
)

UPDATE_OPERATORS = frozenset({"$set", "$unset", "$inc"})


class Params:
    """Accumulates bound values and hands out their placeholders."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def bind(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class Statement:
    sql: str
    params: list[Any]
    grouped: bool = False


def quote_ident(name: str) -> str:
    if not is_safe_identifier(name):
        raise QueryTranslationError(f"Invalid identifier: {name!r}", details={"identifier": name})
    return f'"{name}"'


class SQLCompiler:
    """Compiles statements against one collection's table."""

    def __init__(self, collection: str) -> None:
        self.collection = collection
        self.table = quote_ident(table_for(collection))
        self.id_column = identifier_column(collection)

    def column(self, field: str) -> str:
        if "." in field:
            raise QueryTranslationError(
                f"Nested field path '{field}' cannot be queried relationally",
                details={"field": field},
            )
        return quote_ident(column_for(self.collection, field))

    # ---- WHERE ----

    def condition(self, cond: Condition, params: Params) -> str:
        match cond:
            case Eq(field, None):
                return f"{self.column(field)} IS NULL"
            case Eq(field, value):
                return f"{self.column(field)} = {params.bind(value)}"
            case Ne(field, None):
                return f"{self.column(field)} IS NOT NULL"
            case Ne(field, value):
                return f"{self.column(field)} IS DISTINCT FROM {params.bind(value)}"
            case Gt(field, value):
                return f"{self.column(field)} > {params.bind(value)}"
            case Gte(field, value):
                return f"{self.column(field)} >= {params.bind(value)}"
            case Lt(field, value):
                return f"{self.column(field)} < {params.bind(value)}"
            case Lte(field, value):
                return f"{self.column(field)} <= {params.bind(value)}"
            case In(field, values):
                column = self.column(field)
                present = [v for v in values if v is not None]
                parts = []
                if present:
                    parts.append(f"{column} IN ({', '.join(params.bind(v) for v in present)})")
                if len(present) != len(values):
                    parts.append(f"{column} IS NULL")
                if not parts:
                    return "FALSE"
                return parts[0] if len(parts) == 1 else f"({' OR '.join(parts)})"
            case NotIn(field, values):
                column = self.column(field)
                present = [v for v in values if v is not None]
                if not present:
                    return f"{column} IS NOT NULL" if len(values) else "TRUE"
                placeholders = ", ".join(params.bind(v) for v in present)
                if len(present) != len(values):
                    return f"({column} IS NOT NULL AND {column} NOT IN ({placeholders}))"
                return f"({column} IS NULL OR {column} NOT IN ({placeholders}))"
            case Exists(field, present):
                return f"{self.column(field)} IS {'NOT ' if present else ''}NULL"
            case Regex(field, pattern, case_insensitive):
                operator = "~*" if case_insensitive else "~"
                return f"{self.column(field)} {operator} {params.bind(pattern)}"
            case And(conditions):
                if not conditions:
                    return "TRUE"
                parts = [self.condition(c, params) for c in conditions]
                return parts[0] if len(parts) == 1 else "(" + " AND ".join(parts) + ")"
            case Or(conditions):
                if not conditions:
                    return "FALSE"
                parts = [self.condition(c, params) for c in conditions]
                return parts[0] if len(parts) == 1 else "(" + " OR ".join(parts) + ")"
            case _:
                assert_never(cond)

    def where(self, query: Query | None, params: Params) -> str:
        """Return `` WHERE ...`` or an empty string for an unfiltered query."""
        parsed = parse_query(query)
        if not parsed.conditions:
            return ""
        clause = self.condition(parsed, params)
        if clause.startswith("(") and clause.endswith(")") and len(parsed.conditions) > 1:
            clause = clause[1:-1]
        return f" WHERE {clause}"

    def order_by(self, sort: Sequence[tuple[str, int]], aliases: set[str] | None = None) -> str:
        if not sort:
            return ""
        parts = []
        for field, direction in sort:
            if aliases is not None:
                if field not in aliases:
                    raise QueryTranslationError(
                        f"Cannot sort grouped results by '{field}'", details={"field": field}
                    )
                column = quote_ident(field)
            else:
                column = self.column(field)
            parts.append(f"{column} {'DESC' if direction == -1 else 'ASC'}")
        return " ORDER BY " + ", ".join(parts)

    @staticmethod
    def paging(limit: int | None, skip: int | None, params: Params) -> str:
        sql = ""
        if limit is not None:
            sql += f" LIMIT {params.bind(int(limit))}"
        if skip:
            sql += f" OFFSET {params.bind(int(skip))}"
        return sql

    # ---- Statements ----

    def select(self, query: Query | None, options: QueryOptions | None = None) -> Statement:
        options = options or QueryOptions()
        params = Params()
        included = options.included_fields()
        if included:
            columns = [quote_ident(self.id_column)]
            for field in included:
                column = self.column(field)
                if column not in columns:
                    columns.append(column)
            projection = ", ".join(columns)
        else:
            projection = "*"
        sql = f"SELECT {projection} FROM {self.table}"
        sql += self.where(query, params)
        sql += self.order_by(options.sort)
        sql += self.paging(options.limit, options.skip, params)
        return Statement(sql, params.values)

    def count(self, query: Query | None) -> Statement:
        params = Params()
        sql = f"SELECT COUNT(*) FROM {self.table}" + self.where(query, params)
        return Statement(sql, params.values)

    def insert(self, rows: Sequence[Mapping[str, Any]]) -> Statement:
        """Multi-row INSERT; columns a row lacks take their DEFAULT."""
        columns: list[str] = []
        for row in rows:
            for column in row:
                if column not in columns:
                    columns.append(column)
        if not columns:
            if len(rows) != 1:
                raise QueryTranslationError("Cannot bulk insert rows without columns")
            return Statement(f"INSERT INTO {self.table} DEFAULT VALUES RETURNING *", [])

        params = Params()
        values = []
        for row in rows:
            cells = [params.bind(row[c]) if c in row else "DEFAULT" for c in columns]
            values.append("(" + ", ".join(cells) + ")")
        column_list = ", ".join(quote_ident(c) for c in columns)
        sql = f"INSERT INTO {self.table} ({column_list}) VALUES {', '.join(values)} RETURNING *"
        return Statement(sql, params.values)

    def assignments(self, update: Mapping[str, Any], params: Params) -> list[str]:
        operators = [k for k in update if k.startswith("$")]
        if operators and len(operators) != len(update):
            raise QueryTranslationError("Cannot mix update operators with plain fields")
        if not operators:
            update = {"$set": update}

        parts: list[str] = []
        for op, fields in update.items():
            if op not in UPDATE_OPERATORS:
                raise QueryTranslationError(f"Unsupported update operator {op}", details={"operator": op})
            for field, value in fields.items():
                if field in (ID_FIELD, NATIVE_ID_FIELD):
                    continue
                column = self.column(field)
                if op == "$set":
                    parts.append(f"{column} = {params.bind(value)}")
                elif op == "$unset":
                    parts.append(f"{column} = NULL")
                else:
                    parts.append(f"{column} = COALESCE({column}, 0) + {params.bind(value)}")
        return parts

    def update(self, query: Query | None, update: Mapping[str, Any], returning: bool = True) -> Statement | None:
        """UPDATE matching rows; None when the update assigns nothing."""
        params = Params()
        parts = self.assignments(update, params)
        if not parts:
            return None
        sql = f"UPDATE {self.table} SET {', '.join(parts)}" + self.where(query, params)
        if returning:
            sql += " RETURNING *"
        return Statement(sql, params.values)

    def delete(self, query: Query | None) -> Statement:
        params = Params()
        return Statement(f"DELETE FROM {self.table}" + self.where(query, params), params.values)

    # ---- Aggregation ----

    def _field_ref(self, arg: Any, op: str) -> str:
        if not (isinstance(arg, str) and arg.startswith("$")):
            raise QueryTranslationError(
                f"{op} expects a '$field' reference, got {arg!r}", details={"operator": op}
            )
        return self.column(arg[1:])

    def accumulator(self, op: str, arg: Any, params: Params) -> str:
        if op == "$sum":
            if isinstance(arg, bool) or not isinstance(arg, (int, float, str)):
                raise QueryTranslationError(f"Unsupported $sum argument {arg!r}")
            if isinstance(arg, str):
                return f"COALESCE(SUM({self._field_ref(arg, op)}), 0)"
            if arg == 1:
                return "COUNT(*)"
            return f"COUNT(*) * {params.bind(arg)}::numeric"
        if op == "$avg":
            return f"AVG({self._field_ref(arg, op)})"
        if op == "$min":
            return f"MIN({self._field_ref(arg, op)})"
        if op == "$max":
            return f"MAX({self._field_ref(arg, op)})"
        if op == "$addToSet":
            return f"ARRAY_AGG(DISTINCT {self._field_ref(arg, op)})"
        if op == "$push":
            return f"ARRAY_AGG({self._field_ref(arg, op)})"
        raise QueryTranslationError(f"Unsupported accumulator {op}", details={"operator": op})

    def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> Statement:
        """Compile the supported pipeline subset.

        ``$match`` stages must precede ``$group``; a grouped pipeline may
        then ``$sort`` on its output names and page with ``$skip`` /
        ``$limit``. Ungrouped pipelines compile to a plain SELECT.
        """
        match_conditions: list[Condition] = []
        group: Mapping[str, Any] | None = None
        sort: list[tuple[str, int]] = []
        skip: int | None = None
        limit: int | None = None
        projection: Mapping[str, Any] | None = None

        for stage in pipeline:
            if not isinstance(stage, Mapping) or len(stage) != 1:
                raise QueryTranslationError("Each pipeline stage must have exactly one operator")
            (op, spec), = stage.items()
            if op == "$match":
                if group is not None or sort or skip is not None or limit is not None:
                    raise QueryTranslationError("$match is only supported before $group, $sort and paging")
                match_conditions.append(parse_query(spec))
            elif op == "$group":
                if group is not None:
                    raise QueryTranslationError("Only one $group stage is supported")
                group = spec
            elif op == "$sort":
                sort = normalize_sort(spec)
            elif op == "$skip":
                skip = int(spec)
            elif op == "$limit":
                limit = int(spec)
            elif op == "$project":
                if group is not None:
                    raise QueryTranslationError("$project after $group is not supported")
                if any(not v for v in spec.values()):
                    raise QueryTranslationError("Only inclusion projections are supported")
                projection = spec
            else:
                raise QueryTranslationError(f"Unsupported pipeline stage {op}", details={"stage": op})

        query = And(tuple(match_conditions))
        if group is None:
            options = QueryOptions(sort=sort, limit=limit, skip=skip,
                                   projection=list(projection) if projection else None)
            return self.select(query, options)

        params = Params()
        key = group.get("_id")
        group_by = ""
        if key is None:
            select_parts = ['NULL AS "_id"']
        elif isinstance(key, str) and key.startswith("$"):
            column = self.column(key[1:])
            select_parts = [f'{column} AS "_id"']
            group_by = f" GROUP BY {column}"
        else:
            raise QueryTranslationError("$group _id must be null or a single '$field'")

        aliases = {"_id"}
        for name, acc in group.items():
            if name == "_id":
                continue
            if not isinstance(acc, Mapping) or len(acc) != 1:
                raise QueryTranslationError(f"Accumulator for '{name}' must have exactly one operator")
            (acc_op, arg), = acc.items()
            select_parts.append(f"{self.accumulator(acc_op, arg, params)} AS {quote_ident(name)}")
            aliases.add(name)

        sql = f"SELECT {', '.join(select_parts)} FROM {self.table}"
        sql += self.where(query, params)
        sql += group_by
        sql += self.order_by(sort, aliases=aliases)
        sql += self.paging(limit, skip, params)
        return Statement(sql, params.values, grouped=True)
