import importlib
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crudkit.api.router import create_registry_router
from crudkit.api.tables import create_tables_router
from crudkit.core.config import settings
from crudkit.core.request_context import install_request_context
from crudkit.models.entity import EntityRegistry


def load_registry(path: str) -> EntityRegistry:
    """Resolve ``"package.module:attribute"`` to an EntityRegistry."""
    if not path.strip():
        return EntityRegistry()
    module_name, _, attribute = path.strip().partition(":")
    module = importlib.import_module(module_name)
    registry = getattr(module, attribute or "registry")
    if not isinstance(registry, EntityRegistry):
        raise TypeError(f"{path} is not an EntityRegistry")
    return registry


def create_app(
    registry: EntityRegistry,
    *,
    api_prefix: str = settings.API_PREFIX,
    tables_prefix: str = settings.TABLES_PREFIX,
) -> FastAPI:
    logging.getLogger("crudkit").setLevel(settings.LOG_LEVEL.upper())

    app = FastAPI(title=settings.APP_NAME, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_request_context(app)

    app.include_router(create_registry_router(registry), prefix=api_prefix)
    app.include_router(
        create_tables_router(registry, require_admin=settings.TABLE_COMMANDS_REQUIRE_ADMIN),
        prefix=tables_prefix,
    )

    @app.get("/", include_in_schema=False)
    def landing():
        return JSONResponse({"service": settings.APP_NAME, "status": "ok", "entities": registry.table_names()})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app(load_registry(settings.ENTITY_REGISTRY))
