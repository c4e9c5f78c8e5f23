"""Request context middleware for structured logging."""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# Health probes would drown the access log
_QUIET_PATHS = frozenset({"/health"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request_id, method and path to structlog context vars for the
    duration of a request and echoes the id in X-Request-ID. An incoming
    X-Request-ID is reused so a webhook retry can be followed across hops."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        path = request.url.path
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=path
        )

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        if path not in _QUIET_PATHS:
            logger.info("request_completed", status_code=response.status_code, duration_ms=elapsed_ms)

        structlog.contextvars.clear_contextvars()
        return response
