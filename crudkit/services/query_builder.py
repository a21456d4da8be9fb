from __future__ import annotations

import re
import uuid
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field

from crudkit.models.fields import FieldValue, Identifier, KeyValuePairs, Text

ORDER_BY_KEY = "order_by"
ORDER_DIR_KEY = "order_dir"
DEFAULT_ORDER_COLUMN = "id"

# Suffix -> SQL operator for SELECT filters; anything else is an equality.
FILTER_OPERATORS = {
    "_gt": ">",
    "_lt": "<",
    "_ge": ">=",
    "_le": "<=",
}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class QueryBuildError(ValueError):
    pass


@dataclass(frozen=True)
class BuiltQuery:
    sql: str
    bindings: list[FieldValue] = field(default_factory=list)
    order_column: str | None = None
    order_dir: str | None = None


def split_filter_key(key: str) -> tuple[str, str]:
    """Map ``age_gt`` to ``("age", ">")`` and plain names to ``(name, "=")``."""
    if len(key) > 3:
        operator = FILTER_OPERATORS.get(key[-3:])
        if operator is not None:
            return key[:-3], operator
    return key, "="


def _checked_order_column(value: str, allowed: Collection[str] | None) -> str:
    column = value.strip()
    if not _IDENTIFIER_RE.fullmatch(column):
        raise QueryBuildError(f"Invalid order_by column: {value!r}")
    if allowed is not None and column not in allowed:
        raise QueryBuildError(f"Unknown order_by column: {value!r}")
    return column


def build_select(
    table: str,
    filter_pairs: KeyValuePairs,
    owner_id: str | None = None,
    *,
    owner_column: str = "user_id",
    id_column: str = DEFAULT_ORDER_COLUMN,
    allowed_order_columns: Collection[str] | None = None,
) -> BuiltQuery:
    predicates: list[str] = []
    bindings: list[FieldValue] = []
    order_column = id_column
    order_dir = "DESC"

    if owner_id is not None:
        bindings.append(Text(owner_id))
        predicates.append(f"{owner_column} = ${len(bindings)}")

    for key, value in filter_pairs:
        if key == ORDER_BY_KEY:
            if isinstance(value, Text):
                order_column = _checked_order_column(value.value, allowed_order_columns)
            continue
        if key == ORDER_DIR_KEY:
            if isinstance(value, Text) and value.value == "asc":
                order_dir = "ASC"
            continue

        column, operator = split_filter_key(key)
        bindings.append(value)
        predicates.append(f"{column} {operator} ${len(bindings)}")

    sql = f"SELECT * FROM {table}"
    if predicates:
        sql += " WHERE " + " AND ".join(predicates)
    sql += f" ORDER BY {order_column} {order_dir}"
    return BuiltQuery(sql=sql, bindings=bindings, order_column=order_column, order_dir=order_dir)


def build_insert(table: str, pairs: KeyValuePairs, *, id_column: str = DEFAULT_ORDER_COLUMN) -> BuiltQuery:
    if not pairs:
        raise QueryBuildError("INSERT needs at least one column")
    columns = ", ".join(key for key, _ in pairs)
    placeholders = ", ".join(f"${index}" for index in range(1, len(pairs) + 1))
    sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING {id_column}"
    return BuiltQuery(sql=sql, bindings=[value for _, value in pairs])


def build_update(
    table: str,
    row_id: uuid.UUID,
    set_pairs: KeyValuePairs,
    owner_id: str | None = None,
    *,
    owner_column: str = "user_id",
    id_column: str = DEFAULT_ORDER_COLUMN,
) -> BuiltQuery:
    if not set_pairs:
        raise QueryBuildError("UPDATE needs at least one column")
    bindings: list[FieldValue] = []
    assignments: list[str] = []
    for key, value in set_pairs:
        bindings.append(value)
        assignments.append(f"{key} = ${len(bindings)}")

    bindings.append(Identifier(row_id))
    sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE {id_column} = ${len(bindings)}"
    if owner_id is not None:
        bindings.append(Text(owner_id))
        sql += f" AND {owner_column} = ${len(bindings)}"
    return BuiltQuery(sql=sql, bindings=bindings)


def build_delete(
    table: str,
    ids: Sequence[uuid.UUID],
    owner_id: str | None = None,
    *,
    owner_column: str = "user_id",
    id_column: str = DEFAULT_ORDER_COLUMN,
) -> BuiltQuery:
    if not ids:
        raise QueryBuildError("DELETE needs at least one id")
    bindings: list[FieldValue] = [Identifier(row_id) for row_id in ids]
    placeholders = ", ".join(f"${index}" for index in range(1, len(bindings) + 1))
    sql = f"DELETE FROM {table} WHERE {id_column} IN ({placeholders})"
    if owner_id is not None:
        bindings.append(Text(owner_id))
        sql += f" AND {owner_column} = ${len(bindings)}"
    return BuiltQuery(sql=sql, bindings=bindings)
