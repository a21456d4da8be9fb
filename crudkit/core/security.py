from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import partial
from threading import Lock
from typing import Any

import httpx
from jose import JWTError, jwt

from crudkit.core.config import Settings

_LOG = logging.getLogger("crudkit.auth")

BEARER_PREFIX = "Bearer "
JWKS_PATH = "/.well-known/jwks.json"


class AuthError(Exception):
    """Token rejected. ``reason`` is for logs only, never for the client."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MissingTokenError(AuthError):
    pass


class KeySetUnavailableError(Exception):
    pass


@dataclass(frozen=True)
class Identity:
    user_id: str
    subscription: str | None = None
    permissions: tuple[str, ...] = ()

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class IssuerConfig:
    issuer: str
    audience: str
    secret: str | None = None

    @property
    def uses_shared_secret(self) -> bool:
        return bool(self.secret)

    @property
    def algorithm(self) -> str:
        return "HS256" if self.uses_shared_secret else "RS256"

    @property
    def jwks_url(self) -> str:
        return self.issuer.rstrip("/") + JWKS_PATH


@dataclass(frozen=True)
class AuthConfig:
    user: IssuerConfig
    admin: IssuerConfig
    subscription: IssuerConfig
    admin_permission: str = "read:admin"
    subscription_subject_claim: str = "subject_id"
    jwks_cache_ttl_seconds: int = 0
    jwks_fetch_timeout_seconds: float = 5.0
    subscription_token_ttl: timedelta = timedelta(days=30)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthConfig":
        user = IssuerConfig(issuer=settings.AUTH_ISSUER, audience=settings.JWT_AUDIENCE)
        admin = IssuerConfig(
            issuer=settings.ADMIN_ISSUER or settings.AUTH_ISSUER,
            audience=settings.ADMIN_AUDIENCE or settings.JWT_AUDIENCE,
        )
        subscription = IssuerConfig(
            issuer=settings.SUBSCRIPTION_ISSUER,
            audience=settings.JWT_AUDIENCE,
            secret=settings.SUBSCRIPTION_SECRET,
        )
        return cls(
            user=user,
            admin=admin,
            subscription=subscription,
            admin_permission=settings.ADMIN_PERMISSION,
            subscription_subject_claim=settings.SUBSCRIPTION_SUBJECT_CLAIM,
            jwks_cache_ttl_seconds=settings.JWKS_CACHE_TTL_SECONDS,
            jwks_fetch_timeout_seconds=settings.JWKS_FETCH_TIMEOUT_SECONDS,
            subscription_token_ttl=timedelta(days=settings.SUBSCRIPTION_JWT_TTL_DAYS),
        )


def create_jwt(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    data = payload.copy()
    data.update({"iat": int(now.timestamp()), "exp": int((now + expires_delta).timestamp())})
    return jwt.encode(data, secret, algorithm="HS256")


def issue_subscription_token(
    config: AuthConfig,
    *,
    subject: str,
    subscription: str,
    expires_delta: timedelta | None = None,
) -> str:
    issuer = config.subscription
    payload = {
        "iss": issuer.issuer,
        "aud": issuer.audience,
        "subscription": subscription,
        config.subscription_subject_claim: subject,
    }
    return create_jwt(payload, issuer.secret or "", expires_delta or config.subscription_token_ttl)


def bearer_token(raw_header: str | None) -> str:
    if not raw_header:
        raise MissingTokenError("no auth token")
    if not raw_header.startswith(BEARER_PREFIX):
        raise MissingTokenError("auth token missing bearer prefix")
    token = raw_header[len(BEARER_PREFIX):].strip()
    if not token:
        raise MissingTokenError("empty bearer token")
    return token


def fetch_jwks(url: str, timeout: float = 5.0) -> list[dict[str, Any]]:
    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.get(url)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise KeySetUnavailableError(f"cannot load key set from {url}: {exc}") from exc
    keys = data.get("keys") if isinstance(data, dict) else None
    if not isinstance(keys, list):
        raise KeySetUnavailableError(f"key set at {url} has no 'keys' list")
    return keys


JwksFetcher = Callable[[str], list[dict[str, Any]]]


@dataclass
class _CachedKeySet:
    keys: list[dict[str, Any]]
    expires_at: datetime


class JwksCache:
    """Key sets by URL, kept for ``ttl_seconds``; a TTL of 0 disables caching."""

    def __init__(self, fetcher: JwksFetcher, ttl_seconds: int = 0):
        self._fetcher = fetcher
        self.ttl_seconds = max(int(ttl_seconds), 0)
        self._data: dict[str, _CachedKeySet] = {}
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl_seconds > 0

    def get(self, url: str, *, refresh: bool = False) -> list[dict[str, Any]]:
        if not self.enabled:
            return self._fetcher(url)
        now = datetime.now(timezone.utc)
        with self._lock:
            cached = self._data.get(url)
            if cached is not None and not refresh and cached.expires_at > now:
                return cached.keys
        keys = self._fetcher(url)
        with self._lock:
            self._data[url] = _CachedKeySet(keys=keys, expires_at=now + timedelta(seconds=self.ttl_seconds))
        return keys

    def invalidate(self, url: str | None = None) -> None:
        with self._lock:
            if url is None:
                self._data.clear()
            else:
                self._data.pop(url, None)


def find_signing_key(keys: list[dict[str, Any]], kid: str) -> dict[str, Any] | None:
    for key in keys:
        if key.get("kid") == kid:
            return key
    return None


@dataclass
class TokenVerifier:
    config: AuthConfig
    fetch: JwksFetcher | None = None
    jwks: JwksCache = field(init=False)

    def __post_init__(self):
        fetcher = self.fetch or partial(fetch_jwks, timeout=self.config.jwks_fetch_timeout_seconds)
        self.jwks = JwksCache(fetcher, ttl_seconds=self.config.jwks_cache_ttl_seconds)

    def _signing_key(self, token: str, issuer: IssuerConfig) -> Any:
        if issuer.uses_shared_secret:
            return issuer.secret
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise AuthError(f"malformed token header: {exc}") from exc
        kid = header.get("kid")
        if not kid:
            raise AuthError("token header has no kid")
        key = find_signing_key(self.jwks.get(issuer.jwks_url), kid)
        if key is None and self.jwks.enabled:
            # Possibly a rotated key the cached set does not know yet.
            key = find_signing_key(self.jwks.get(issuer.jwks_url, refresh=True), kid)
        if key is None:
            raise AuthError(f"no signing key matches kid {kid!r}")
        return key

    def decode(self, token: str, issuer: IssuerConfig) -> dict[str, Any]:
        key = self._signing_key(token, issuer)
        try:
            return jwt.decode(
                token,
                key,
                algorithms=[issuer.algorithm],
                audience=issuer.audience,
                issuer=issuer.issuer,
            )
        except JWTError as exc:
            raise AuthError(f"token rejected: {exc}") from exc

    def verify(self, authorization: str | None, subscription: str | None = None) -> Identity:
        claims = self.decode(bearer_token(authorization), self.config.user)
        user_id = str(claims.get("sub") or "").strip()
        if not user_id:
            raise AuthError("token has no subject")
        if subscription is None:
            return Identity(user_id=user_id)

        sub_claims = self.decode(bearer_token(subscription), self.config.subscription)
        bound_subject = str(sub_claims.get(self.config.subscription_subject_claim) or "")
        if bound_subject != user_id:
            raise AuthError("subscription token belongs to another subject")
        tier = sub_claims.get("subscription")
        return Identity(user_id=user_id, subscription=str(tier) if tier is not None else None)

    def verify_admin(self, authorization: str | None) -> Identity:
        claims = self.decode(bearer_token(authorization), self.config.admin)
        user_id = str(claims.get("sub") or "").strip()
        if not user_id:
            raise AuthError("token has no subject")
        permissions = claims.get("permissions") or []
        if not isinstance(permissions, list):
            raise AuthError("permissions claim is not a list")
        identity = Identity(
            user_id=user_id,
            subscription=claims.get("subscription"),
            permissions=tuple(str(item) for item in permissions),
        )
        if not identity.has_permission(self.config.admin_permission):
            raise AuthError(f"missing permission {self.config.admin_permission!r}")
        return identity
