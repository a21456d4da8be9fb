from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from crudkit.core.request_context import current_request_id
from crudkit.models.entity import EntityRegistry
from crudkit.services.crud import database_errors_as_500

_LOG = logging.getLogger("crudkit.tables")


def split_statements(ddl: str) -> list[str]:
    return [part.strip() for part in ddl.split(";") if part.strip()]


def _execute_ddl(db: Session, statements: list[str]) -> None:
    # Raw driver execution: DDL may contain ':' casts that text() would read as binds.
    connection = db.connection()
    for statement in statements:
        connection.exec_driver_sql(statement)


def init_tables(db: Session, registry: EntityRegistry) -> None:
    with database_errors_as_500(db, "init", "schema"):
        _execute_ddl(db, split_statements(registry.schema()))
        db.commit()
    _LOG.info("initialized tables: %s", ", ".join(registry.table_names()))


def reset_tables(db: Session, registry: EntityRegistry) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        drops = ["DROP SCHEMA public CASCADE", "CREATE SCHEMA public"]
    else:
        drops = [f"DROP TABLE IF EXISTS {name}" for name in registry.table_names()]
    with database_errors_as_500(db, "reset", "schema"):
        _execute_ddl(db, drops + split_statements(registry.schema()))
        db.commit()
    _LOG.warning("reset tables on %s [%s]", dialect, current_request_id())


def drop_table(db: Session, registry: EntityRegistry, table_name: str) -> None:
    # Only server-declared names ever reach the DDL string.
    if registry.get(table_name) is None:
        raise HTTPException(status_code=400, detail="Unknown table")
    with database_errors_as_500(db, "drop", table_name):
        _execute_ddl(db, [f"DROP TABLE IF EXISTS {table_name}"])
        db.commit()
    _LOG.warning("dropped table %s [%s]", table_name, current_request_id())
