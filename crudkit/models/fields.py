"""Typed scalar values and the key-value projection used to build SQL.

Every object that takes part in a generated statement (stored entities, input
payloads, query filters) describes itself as an ordered list of
``(column, FieldValue)`` pairs. The query builder only ever binds the payload of
a FieldValue, so the variant set below is the complete list of column types the
generated endpoints understand.
"""

from __future__ import annotations

import types
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Protocol, Union, get_args, get_origin

from pydantic import BaseModel
from sqlalchemy import BigInteger, Boolean as SABoolean, DateTime, Float as SAFloat, String, Uuid
from sqlalchemy.types import TypeEngine


@dataclass(frozen=True)
class Identifier:
    value: uuid.UUID
    sql_type: ClassVar[TypeEngine] = Uuid(as_uuid=True)


@dataclass(frozen=True)
class Text:
    value: str
    sql_type: ClassVar[TypeEngine] = String()


@dataclass(frozen=True)
class Integer:
    value: int
    sql_type: ClassVar[TypeEngine] = BigInteger()


@dataclass(frozen=True)
class Float:
    value: float
    sql_type: ClassVar[TypeEngine] = SAFloat()


@dataclass(frozen=True)
class Boolean:
    value: bool
    sql_type: ClassVar[TypeEngine] = SABoolean()


@dataclass(frozen=True)
class Timestamp:
    value: datetime
    sql_type: ClassVar[TypeEngine] = DateTime(timezone=True)

    def __post_init__(self) -> None:
        if self.value.tzinfo is None:
            raise ValueError("Timestamp values must be timezone-aware")


FieldValue = Union[Identifier, Text, Integer, Float, Boolean, Timestamp]
KeyValuePairs = list[tuple[str, FieldValue]]

# bool must be looked up before int: bool is a subclass of int.
_VARIANT_BY_PYTHON_TYPE: tuple[tuple[type, type], ...] = (
    (uuid.UUID, Identifier),
    (bool, Boolean),
    (int, Integer),
    (float, Float),
    (datetime, Timestamp),
    (str, Text),
)


def variant_for_type(python_type: Any) -> type | None:
    """Return the FieldValue variant for an annotation, unwrapping ``X | None``."""
    origin = get_origin(python_type)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(python_type) if arg is not type(None)]
        if len(args) != 1:
            return None
        python_type = args[0]
    if not isinstance(python_type, type):
        return None
    for candidate, variant in _VARIANT_BY_PYTHON_TYPE:
        if issubclass(python_type, candidate):
            return variant
    return None


def field_value(value: Any) -> FieldValue:
    """Wrap a Python scalar in its FieldValue variant."""
    if isinstance(value, (Identifier, Text, Integer, Float, Boolean, Timestamp)):
        return value
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    variant = variant_for_type(type(value))
    if variant is None:
        raise TypeError(f"Unsupported field value type: {type(value).__name__}")
    return variant(value)


class KeyValue(Protocol):
    def key_value_pairs(self) -> KeyValuePairs:
        ...


class KeyValueModel(BaseModel):
    """Pydantic model projecting its declared fields as key-value pairs.

    Fields are emitted in declaration order, empty strings included. ``None``
    has no FieldValue variant and is left out.
    """

    def _is_absent(self, value: Any) -> bool:
        return value is None

    def key_value_pairs(self) -> KeyValuePairs:
        pairs: KeyValuePairs = []
        for name in type(self).model_fields:
            value = getattr(self, name)
            if self._is_absent(value):
                continue
            pairs.append((name, field_value(value)))
        return pairs


def column_types(model: type[BaseModel]) -> dict[str, TypeEngine]:
    """SQLAlchemy result types for the columns a model declares."""
    result: dict[str, TypeEngine] = {}
    for name, info in model.model_fields.items():
        variant = variant_for_type(info.annotation)
        if variant is not None:
            result[name] = variant.sql_type
    return result
