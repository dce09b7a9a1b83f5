"""HTTP middleware: request correlation and Prometheus request metrics."""

from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import request_id_ctx, session_key_ctx
from .metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL

REQUEST_ID_HEADER = "X-Request-ID"

_VALID_REQUEST_ID = re.compile(r"^[a-zA-Z0-9\-]{8,128}$")
_SESSION_PREFIX = re.compile(r"^/api/v1/sessions/(?P<project>[^/]+)/(?P<owner>[^/]+)/(?P<repo>[^/]+)")


def _session_key_from_path(path: str) -> str | None:
    match = _SESSION_PREFIX.match(path)
    if match is None:
        return None
    return f"{match['project']}:{match['owner']}/{match['repo']}"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind the request ID and addressed session key for log correlation.

    A well-formed incoming ``X-Request-ID`` is kept; anything else is
    replaced with a fresh UUID. The ID is echoed on the response.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        rid = incoming if _VALID_REQUEST_ID.match(incoming) else str(uuid.uuid4())

        rid_token = request_id_ctx.set(rid)
        key_token = session_key_ctx.set(_session_key_from_path(request.url.path))
        try:
            response = await call_next(request)
        finally:
            session_key_ctx.reset(key_token)
            request_id_ctx.reset(rid_token)

        response.headers[REQUEST_ID_HEADER] = rid
        return response


def _route_label(request: Request) -> str:
    # Label by route template so per-session paths share one series.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests and observe latency per method and route template."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            path = _route_label(request)
            HTTP_REQUESTS_TOTAL.labels(
                method=request.method, path=path, status=status,
            ).inc()
            HTTP_REQUEST_DURATION_SECONDS.labels(
                method=request.method, path=path,
            ).observe(time.perf_counter() - start)
