import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from crudkit.core.deps import identity_dependency
from crudkit.core.security import Identity
from crudkit.db.session import get_db
from crudkit.models.entity import CrudEntity, EndpointVerb, EntityRegistry, QueryFilter
from crudkit.services.access import resolve_access
from crudkit.services.crud import MutationOutcome, create_row, delete_rows, read_rows, update_row

_LOG = logging.getLogger("crudkit.api")


def _filters_or_400(entity: CrudEntity, request: Request) -> QueryFilter:
    try:
        return entity.filter_model.model_validate(dict(request.query_params))
    except ValidationError as exc:
        fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
        raise HTTPException(status_code=400, detail=f"Invalid filter value for: {', '.join(fields)}") from exc


def _verified_or_400(payload) -> None:
    if not payload.verify():
        raise HTTPException(status_code=400, detail="Payload failed validation")


def _mutation_response(outcome: MutationOutcome) -> Response:
    if outcome is MutationOutcome.NO_MATCH:
        raise HTTPException(status_code=400, detail="No rows affected")
    return Response(status_code=200)


def _owner_of(identity: Identity | None) -> str | None:
    return identity.user_id if identity is not None else None


def _add_read_route(router: APIRouter, entity: CrudEntity) -> None:
    verb = EndpointVerb.GET
    current_identity = identity_dependency(entity.config.access_permission(verb))

    def read_objects(
        request: Request,
        db: Session = Depends(get_db),
        identity: Identity | None = Depends(current_identity),
    ):
        decision = resolve_access(entity.config, verb, identity)
        filters = _filters_or_400(entity, request)
        if decision.custom:
            return entity.custom_read(db, entity.table_name, filters, decision.owner_id)
        rows = read_rows(db, entity, filters, decision.owner_id)
        return [entity.entity_model.model_validate(row) for row in rows]

    router.add_api_route(
        f"/{entity.endpoint_name}",
        read_objects,
        methods=["GET"],
        name=f"read_{entity.table_name}",
    )


def _add_create_route(router: APIRouter, entity: CrudEntity) -> None:
    verb = EndpointVerb.POST
    current_identity = identity_dependency(entity.config.access_permission(verb))
    input_model = entity.input_model

    def create_object(
        payload: input_model,
        db: Session = Depends(get_db),
        identity: Identity | None = Depends(current_identity),
    ):
        decision = resolve_access(entity.config, verb, identity)
        _verified_or_400(payload)
        obj = payload.materialize(_owner_of(identity))
        if decision.custom:
            return entity.custom_create(db, entity.table_name, obj)
        return create_row(db, entity, obj)

    router.add_api_route(
        f"/{entity.endpoint_name}",
        create_object,
        methods=["POST"],
        name=f"create_{entity.table_name}",
    )


def _add_update_route(router: APIRouter, entity: CrudEntity) -> None:
    verb = EndpointVerb.PUT
    current_identity = identity_dependency(entity.config.access_permission(verb))
    input_model = entity.input_model

    def update_object(
        row_id: uuid.UUID,
        payload: input_model,
        db: Session = Depends(get_db),
        identity: Identity | None = Depends(current_identity),
    ) -> Response:
        decision = resolve_access(entity.config, verb, identity)
        _verified_or_400(payload)
        if decision.custom:
            status_code = entity.custom_update(db, entity.table_name, row_id, payload, decision.owner_id)
            return Response(status_code=status_code)
        return _mutation_response(update_row(db, entity, row_id, payload, decision.owner_id))

    router.add_api_route(
        f"/{entity.endpoint_name}/{{row_id}}",
        update_object,
        methods=["PUT"],
        name=f"update_{entity.table_name}",
    )


def _add_delete_route(router: APIRouter, entity: CrudEntity) -> None:
    verb = EndpointVerb.DELETE
    current_identity = identity_dependency(entity.config.access_permission(verb))

    def delete_object(
        row_id: uuid.UUID,
        db: Session = Depends(get_db),
        identity: Identity | None = Depends(current_identity),
    ) -> Response:
        decision = resolve_access(entity.config, verb, identity)
        ids = [row_id]
        if decision.custom:
            status_code = entity.custom_delete(db, entity.table_name, ids, decision.owner_id)
            return Response(status_code=status_code)
        return _mutation_response(delete_rows(db, entity, ids, decision.owner_id))

    router.add_api_route(
        f"/{entity.endpoint_name}/{{row_id}}",
        delete_object,
        methods=["DELETE"],
        name=f"delete_{entity.table_name}",
    )


_ROUTE_BUILDERS = {
    EndpointVerb.GET: _add_read_route,
    EndpointVerb.POST: _add_create_route,
    EndpointVerb.PUT: _add_update_route,
    EndpointVerb.DELETE: _add_delete_route,
}


def create_endpoint_router(entity: CrudEntity) -> APIRouter:
    router = APIRouter(tags=[entity.endpoint_name])
    for verb in EndpointVerb:
        if not entity.config.include_endpoint(verb):
            continue
        _ROUTE_BUILDERS[verb](router, entity)
        _LOG.debug(
            "registered %s /%s (%s)",
            verb.value,
            entity.endpoint_name,
            entity.config.access_permission(verb).value,
        )
    return router


def create_registry_router(registry: EntityRegistry) -> APIRouter:
    router = APIRouter()
    for entity in registry:
        router.include_router(create_endpoint_router(entity))
    return router
