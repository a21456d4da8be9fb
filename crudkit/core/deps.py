import logging
from functools import lru_cache

from fastapi import Depends, Header, HTTPException

from crudkit.core.config import settings
from crudkit.core.request_context import current_request_id
from crudkit.core.security import AuthConfig, AuthError, Identity, KeySetUnavailableError, TokenVerifier
from crudkit.models.entity import AccessPermission

_LOG = logging.getLogger("crudkit.auth")


@lru_cache(maxsize=1)
def get_token_verifier() -> TokenVerifier:
    return TokenVerifier(AuthConfig.from_settings(settings))


def _unauthorized(exc: AuthError) -> HTTPException:
    _LOG.info("auth rejected: %s [%s]", exc.reason, current_request_id())
    return HTTPException(status_code=401, detail="Unauthorized")


def _key_set_unavailable(exc: KeySetUnavailableError) -> HTTPException:
    _LOG.warning("key set unavailable: %s [%s]", exc, current_request_id())
    return HTTPException(status_code=500, detail="Internal server error")


def get_anonymous() -> None:
    return None


def get_current_user(
    authorization: str | None = Header(default=None),
    subscription: str | None = Header(default=None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> Identity:
    try:
        return verifier.verify(authorization, subscription)
    except AuthError as exc:
        raise _unauthorized(exc) from exc
    except KeySetUnavailableError as exc:
        raise _key_set_unavailable(exc) from exc


def get_current_admin(
    authorization: str | None = Header(default=None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> Identity:
    try:
        return verifier.verify_admin(authorization)
    except AuthError as exc:
        raise _unauthorized(exc) from exc
    except KeySetUnavailableError as exc:
        raise _key_set_unavailable(exc) from exc


IDENTITY_DEPENDENCIES = {
    AccessPermission.ANY: get_anonymous,
    AccessPermission.AUTHENTICATED: get_current_user,
    AccessPermission.ADMIN: get_current_admin,
}


def identity_dependency(scope: AccessPermission):
    return IDENTITY_DEPENDENCIES[scope]
