"""
Request-scoped logging context.

Every request gets a request_id and a correlation_id (taken from the
``X-Request-ID`` / ``X-Correlation-ID`` headers when the caller sends them).
Both are bound with structlog.contextvars, so every log line written while
the request is handled (including those of a monthly close run it
triggers) carries them. Both ids are echoed back on the response.
"""
from __future__ import annotations

import logging
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class CorrelationMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        ids = {
            "request_id": request.headers.get("x-request-id") or uuid.uuid4().hex,
            "correlation_id": request.headers.get("x-correlation-id") or uuid.uuid4().hex,
        }

        with structlog.contextvars.bound_contextvars(**ids):
            started = time.perf_counter()
            status_code = None
            try:
                response = await call_next(request)
                status_code = response.status_code
            finally:
                logger.info(
                    "request_completed",
                    extra={
                        "http.method": request.method,
                        "http.route": _route_template(request),
                        "http.status_code": status_code,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    },
                )

        response.headers["x-request-id"] = ids["request_id"]
        response.headers["x-correlation-id"] = ids["correlation_id"]
        return response
