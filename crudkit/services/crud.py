from __future__ import annotations

import enum
import logging
import re
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from fastapi import HTTPException
from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import TextClause
from sqlalchemy.types import TypeEngine

from crudkit.core.request_context import current_request_id
from crudkit.models.entity import CrudEntity, InputPayload, QueryFilter
from crudkit.models.fields import KeyValueModel, column_types
from crudkit.services.query_builder import (
    BuiltQuery,
    QueryBuildError,
    build_delete,
    build_insert,
    build_select,
    build_update,
)

_LOG = logging.getLogger("crudkit.db")
_PLACEHOLDER_RE = re.compile(r"\$(\d+)")


class MutationOutcome(enum.Enum):
    APPLIED = "applied"
    NO_MATCH = "no_match"


def to_statement(built: BuiltQuery, result_types: Mapping[str, TypeEngine] | None = None) -> TextClause:
    """Turn ``$n`` placeholders into typed SQLAlchemy bind parameters.

    The payload of each FieldValue is bound with the type of its variant, so the
    same statement works on any dialect SQLAlchemy drives.
    """
    sql = _PLACEHOLDER_RE.sub(lambda match: f":p{match.group(1)}", built.sql)
    params = [
        bindparam(f"p{index}", value.value, type_=value.sql_type)
        for index, value in enumerate(built.bindings, start=1)
    ]
    statement = text(sql).bindparams(*params)
    if result_types:
        return statement.columns(**result_types)
    return statement


@contextmanager
def database_errors_as_500(db: Session, action: str, table_name: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        _LOG.exception("%s on %s failed [%s]", action, table_name, current_request_id())
        raise HTTPException(status_code=500, detail="Internal server error") from exc


def _built_or_400(builder, *args, **kwargs) -> BuiltQuery:
    try:
        return builder(*args, **kwargs)
    except QueryBuildError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _outcome(rowcount: int) -> MutationOutcome:
    return MutationOutcome.APPLIED if rowcount and rowcount > 0 else MutationOutcome.NO_MATCH


def read_rows(db: Session, entity: CrudEntity, filters: QueryFilter, owner_id: str | None) -> list[dict[str, Any]]:
    config = entity.config
    built = _built_or_400(
        build_select,
        config.table_name,
        filters.key_value_pairs(),
        owner_id,
        owner_column=config.owner_column,
        id_column=config.id_column,
        allowed_order_columns=entity.columns or None,
    )
    statement = to_statement(built, column_types(entity.entity_model))
    with database_errors_as_500(db, "select", config.table_name):
        rows = db.execute(statement).mappings().all()
    return [dict(row) for row in rows]


def create_row(db: Session, entity: CrudEntity, obj: KeyValueModel) -> Any:
    config = entity.config
    built = _built_or_400(build_insert, config.table_name, obj.key_value_pairs(), id_column=config.id_column)
    id_type = column_types(entity.entity_model).get(config.id_column)
    statement = to_statement(built, {config.id_column: id_type} if id_type is not None else None)
    with database_errors_as_500(db, "insert", config.table_name):
        new_id = db.execute(statement).scalar_one()
        db.commit()
    _LOG.debug("inserted %s into %s", new_id, config.table_name)
    return new_id


def update_row(
    db: Session, entity: CrudEntity, row_id: uuid.UUID, payload: InputPayload, owner_id: str | None
) -> MutationOutcome:
    config = entity.config
    built = _built_or_400(
        build_update,
        config.table_name,
        row_id,
        payload.key_value_pairs(),
        owner_id,
        owner_column=config.owner_column,
        id_column=config.id_column,
    )
    with database_errors_as_500(db, "update", config.table_name):
        result = db.execute(to_statement(built))
        db.commit()
    return _outcome(result.rowcount)


def delete_rows(
    db: Session, entity: CrudEntity, ids: list[uuid.UUID], owner_id: str | None
) -> MutationOutcome:
    config = entity.config
    built = _built_or_400(
        build_delete,
        config.table_name,
        ids,
        owner_id,
        owner_column=config.owner_column,
        id_column=config.id_column,
    )
    with database_errors_as_500(db, "delete", config.table_name):
        result = db.execute(to_statement(built))
        db.commit()
    return _outcome(result.rowcount)
