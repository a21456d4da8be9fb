from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from crudkit.core.config import settings
from crudkit.core.deps import get_current_admin
from crudkit.db.session import get_db
from crudkit.models.entity import EntityRegistry
from crudkit.services.tables import drop_table, init_tables, reset_tables


def _guard_destructive() -> None:
    env = str(settings.APP_ENV or "").strip().lower()
    if env in {"prod", "production"}:
        raise HTTPException(status_code=404, detail="Not found")


def create_tables_router(registry: EntityRegistry, *, require_admin: bool = False) -> APIRouter:
    router = APIRouter(
        tags=["tables"],
        dependencies=[Depends(get_current_admin)] if require_admin else [],
    )

    @router.post("/initTables")
    def init_tables_endpoint(db: Session = Depends(get_db)) -> Response:
        init_tables(db, registry)
        return Response(status_code=200)

    @router.post("/resetTables")
    def reset_tables_endpoint(db: Session = Depends(get_db)) -> Response:
        _guard_destructive()
        reset_tables(db, registry)
        return Response(status_code=200)

    @router.post("/dropTable")
    def drop_table_endpoint(table_name: str = Body(...), db: Session = Depends(get_db)) -> Response:
        _guard_destructive()
        drop_table(db, registry, table_name)
        return Response(status_code=200)

    return router
