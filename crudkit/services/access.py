from __future__ import annotations

from dataclasses import dataclass

from crudkit.core.security import Identity
from crudkit.models.entity import EndpointVerb, EntityConfig, ObjectPermission


@dataclass(frozen=True)
class AccessDecision:
    owner_id: str | None
    custom: bool


def owner_id_for(config: EntityConfig, verb: EndpointVerb, identity: Identity | None) -> str | None:
    # OWNER without a caller identity degrades to ALL.
    if config.object_permission(verb) is ObjectPermission.ALL:
        return None
    if identity is None:
        return None
    return identity.user_id


def resolve_access(config: EntityConfig, verb: EndpointVerb, identity: Identity | None) -> AccessDecision:
    """Decide the owner predicate and handler for one request.

    Caller scope is enforced earlier by the identity dependency the route was
    registered with, so ``identity`` is already verified (or ``None`` on ANY
    routes) when this runs.
    """
    return AccessDecision(
        owner_id=owner_id_for(config, verb, identity),
        custom=config.is_custom(verb),
    )
