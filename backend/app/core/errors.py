"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.app.core.errors import (
        MessageServiceError,
        ReplayNotFoundError,
        StoreError,
        TransportError,
        register_error_handlers,
    )

    raise ReplayNotFoundError(message_id=42)
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class MessageServiceError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(MessageServiceError):
    """Resource not found (404)."""

    def __init__(self, resource: str, message: Optional[str] = None, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=message or f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ReplayNotFoundError(NotFoundError):
    """Replay target does not exist or is not currently failed (404)."""

    def __init__(self, message_id: int):
        super().__init__(
            "Failed message",
            f"no failed message found with id {message_id}",
            message_id=message_id,
        )
        self.message_id = message_id


class ValidationError(MessageServiceError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class AuthenticationError(MessageServiceError):
    """Missing or invalid API key (401)."""

    def __init__(self, message: str = "Invalid or missing API key"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class ConfigurationError(MessageServiceError):
    """Server-side misconfiguration (500)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details=details,
        )


class ExternalServiceError(MessageServiceError):
    """External API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class TransportError(ExternalServiceError):
    """Delivery webhook rejected the message or could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["upstream_status"] = status_code
        super().__init__("delivery-webhook", message, **details)
        self.upstream_status = status_code


class StoreError(MessageServiceError):
    """Message store rejected or failed an operation (500)."""

    def __init__(self, operation: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Store operation '{operation}' failed: {message}",
            status_code=500,
            error_code="STORE_ERROR",
            details={"operation": operation, **details},
        )
        self.operation = operation


class CacheNotConfiguredError(MessageServiceError):
    """Cached data requested while the cache is disabled (503)."""

    def __init__(self, message: str = "redis client not configured"):
        super().__init__(
            message=message,
            status_code=503,
            error_code="CACHE_NOT_CONFIGURED",
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "success": False,
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        },
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(MessageServiceError)
    async def handle_service_error(request: Request, exc: MessageServiceError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = {
            ".".join(str(p) for p in err.get("loc", ()) if p != "body"): err.get("msg", "")
            for err in exc.errors()
        }
        logger.warning("Request validation failed: %s", fields)
        return _build_error_response(
            422, "VALIDATION_ERROR", "Validation failed",
            {"fields": fields}, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
