"""
middleware.py — Per-request access log for the relay API.

Each API call gets a request id (taken from ``X-Request-ID`` or generated),
which is echoed back together with ``X-Process-Time`` and attached to every
log line emitted while the request is handled. Health probes and the docs
pages are served without an access line.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
QUIET_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")


def _access_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log with request ids and timing."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        path = request.url.path
        set_request_context(
            request_id=request_id,
            client_ip=request.client.host if request.client else "unknown",
            endpoint=path,
            method=request.method,
        )

        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers["X-Process-Time"] = f"{(time.perf_counter() - start) * 1000:.1f}ms"
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            if status_code >= 500 or not path.startswith(QUIET_PREFIXES):
                logger.log(
                    _access_level(status_code),
                    "%s %s → %d (%.1fms)",
                    request.method, path, status_code, duration_ms,
                    extra={"duration_ms": duration_ms, "status_code": status_code, "endpoint": path},
                )
            set_request_context()
