"""Request ids and response headers for the generated API.

Each request gets an id, taken from ``X-Request-ID`` when the caller sends a
usable one. The id is echoed on the response and exposed through
:func:`current_request_id`, so database and auth log lines can be matched with
the access line written here.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64
NO_REQUEST_ID = "-"

RESPONSE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-store",
}

_LOG = logging.getLogger("crudkit.http")
_request_id: ContextVar[str] = ContextVar("crudkit_request_id", default=NO_REQUEST_ID)


def current_request_id() -> str:
    return _request_id.get()


def accepted_request_id(raw: str | None) -> str:
    value = (raw or "").strip()
    if 0 < len(value) <= MAX_REQUEST_ID_LENGTH and value.isascii() and value.replace("-", "").isalnum():
        return value
    return uuid4().hex


def install_request_context(app: FastAPI) -> None:
    @app.middleware("http")
    async def _request_context_middleware(request: Request, call_next):
        request_id = accepted_request_id(request.headers.get(REQUEST_ID_HEADER))
        token = _request_id.set(request_id)
        started_at = perf_counter()
        try:
            response = await call_next(request)
        finally:
            _request_id.reset(token)

        response.headers.update(RESPONSE_HEADERS)
        response.headers[REQUEST_ID_HEADER] = request_id

        elapsed_ms = (perf_counter() - started_at) * 1000.0
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        _LOG.log(
            level,
            "%s %s -> %s (%.1f ms) [%s]",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id,
        )
        return response
