"""Service error type and exception handlers for consistent error responses."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from settlement_service.logging import get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request
    from starlette.types import ExceptionHandler

__all__ = ["ServiceError", "register_exception_handlers"]

# Router-level failures raised by Starlette before a handler runs.
_ROUTING_ERRORS: dict[int, tuple[str, str]] = {
    404: ("NOT_FOUND", "Resource not found"),
    405: ("METHOD_NOT_ALLOWED", "Method not allowed"),
}


class ServiceError(Exception):
    """
    Domain error carried from services to the HTTP boundary.

    Attributes:
        error: Machine-readable error code (e.g. ``VERSION_MISMATCH``)
        message: Human-readable description
        status_code: HTTP status the error renders with
        details: Extra structured context
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Render the ``{"error", "message", "details"}`` envelope."""
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "details": details or {}},
    )


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError; dependency outages log at warning, rejections at info."""
    extra = {
        "error_code": exc.error,
        "status_code": exc.status_code,
        "method": request.method,
        "path": str(request.url.path),
    }
    logger = get_logger(__name__)
    if exc.status_code >= 500:
        logger.warning("Dependency unavailable", extra=extra)
    else:
        logger.info("Command rejected", extra=extra)
    return error_response(exc.status_code, exc.error, exc.message, exc.details)


async def unhandled_exception_handler(request: Request, _exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    get_logger(__name__).exception(
        "Unhandled exception",
        extra={"method": request.method, "path": str(request.url.path)},
    )
    return error_response(500, "internal_error", "An unexpected error occurred")


async def http_exception_handler(
    _request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Map Starlette routing errors onto settlement error codes."""
    error, message = _ROUTING_ERRORS.get(exc.status_code, ("HTTP_ERROR", str(exc.detail)))
    return error_response(exc.status_code, error, message)


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the app."""
    app.add_exception_handler(ServiceError, cast("ExceptionHandler", service_error_handler))
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(
        StarletteHTTPException,
        cast("ExceptionHandler", http_exception_handler),
    )
