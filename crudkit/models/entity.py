from __future__ import annotations

import enum
import uuid
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Session

from crudkit.models.fields import KeyValueModel


class EndpointVerb(str, enum.Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


class ObjectPermission(str, enum.Enum):
    ALL = "ALL"
    OWNER = "OWNER"


class AccessPermission(str, enum.Enum):
    ANY = "ANY"
    AUTHENTICATED = "AUTHENTICATED"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class VerbConfig:
    included: bool = True
    custom: bool = False
    object_scope: ObjectPermission = ObjectPermission.ALL
    caller_scope: AccessPermission = AccessPermission.ANY


@dataclass(frozen=True)
class EntityConfig:
    table_name: str
    endpoint_name: str
    schema: str
    verbs: Mapping[EndpointVerb, VerbConfig] = field(default_factory=dict)
    owner_column: str = "user_id"
    id_column: str = "id"

    def verb(self, verb: EndpointVerb) -> VerbConfig:
        return self.verbs.get(verb, VerbConfig())

    def include_endpoint(self, verb: EndpointVerb) -> bool:
        return self.verb(verb).included

    def is_custom(self, verb: EndpointVerb) -> bool:
        return self.verb(verb).custom

    def object_permission(self, verb: EndpointVerb) -> ObjectPermission:
        return self.verb(verb).object_scope

    def access_permission(self, verb: EndpointVerb) -> AccessPermission:
        return self.verb(verb).caller_scope


class QueryFilter(KeyValueModel):
    """Base for GET filters. Subclasses add optional fields such as ``age_gt``."""

    order_by: str | None = None
    order_dir: str | None = None

    def _is_absent(self, value: Any) -> bool:
        # An empty query parameter means no predicate for that column.
        return value is None or value == ""


class InputPayload(KeyValueModel):
    """Base for POST/PUT bodies."""

    def verify(self) -> bool:
        return True

    def materialize(self, owner_id: str | None) -> KeyValueModel:
        raise NotImplementedError


def _not_implemented() -> HTTPException:
    return HTTPException(status_code=501, detail="Not implemented")


class CrudEntity:
    """Everything the router needs to expose one table.

    Override the ``custom_*`` hooks in a subclass for verbs whose config sets
    ``custom=True``; the defaults answer 501.
    """

    def __init__(
        self,
        config: EntityConfig,
        *,
        entity_model: type[KeyValueModel],
        input_model: type[InputPayload],
        filter_model: type[QueryFilter] = QueryFilter,
    ):
        self.config = config
        self.entity_model = entity_model
        self.input_model = input_model
        self.filter_model = filter_model

    @property
    def table_name(self) -> str:
        return self.config.table_name

    @property
    def endpoint_name(self) -> str:
        return self.config.endpoint_name

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(self.entity_model.model_fields)

    def custom_create(self, db: Session, table_name: str, obj: KeyValueModel) -> uuid.UUID:
        raise _not_implemented()

    def custom_read(
        self, db: Session, table_name: str, filters: QueryFilter, owner_id: str | None
    ) -> list[Any]:
        raise _not_implemented()

    def custom_update(
        self, db: Session, table_name: str, row_id: uuid.UUID, payload: InputPayload, owner_id: str | None
    ) -> int:
        raise _not_implemented()

    def custom_delete(
        self, db: Session, table_name: str, ids: list[uuid.UUID], owner_id: str | None
    ) -> int:
        raise _not_implemented()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(table={self.table_name!r}, endpoint={self.endpoint_name!r})"


class EntityRegistry:
    def __init__(self, entities: list[CrudEntity] | None = None):
        self._entities: dict[str, CrudEntity] = {}
        for entity in entities or []:
            self.register(entity)

    def register(self, entity: CrudEntity) -> CrudEntity:
        name = entity.table_name
        if name in self._entities:
            raise ValueError(f"Table {name!r} is already registered")
        self._entities[name] = entity
        return entity

    def get(self, table_name: str) -> CrudEntity | None:
        return self._entities.get(table_name)

    def table_names(self) -> list[str]:
        return list(self._entities)

    def schema(self) -> str:
        return "\n".join(entity.config.schema.strip() for entity in self._entities.values())

    def __iter__(self) -> Iterator[CrudEntity]:
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)
