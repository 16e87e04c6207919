"""API error handling: domain exceptions to the standard error envelope.

Status code mapping:
- ``ValueError`` (including ``RoutingValidationError``) → 400 Bad Request
- ``LookupError`` (thread, unassigned message, dead letter) → 404 Not Found
- ``ConflictError`` (identity ownership, reassignment) → 409 Conflict
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from threadline.api.models import ErrorDetail, ErrorResponse
from threadline.errors import ConflictError

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error on %s: %s", request.url.path, exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_lookup_error(request: Request, exc: LookupError) -> JSONResponse:
    """Return 404 when the addressed record does not exist."""
    message = str(exc.args[0]) if exc.args else type(exc).__name__
    logger.info("Not found on %s: %s (%s)", request.url.path, message, type(exc).__name__)
    return _error(404, "NOT_FOUND", f"{type(exc).__name__}: {message}")


async def _handle_conflict(request: Request, exc: ConflictError) -> JSONResponse:
    logger.info("Conflict on %s: %s", request.url.path, exc)
    return _error(409, "CONFLICT", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any unhandled exception into a 500 with the standard envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(LookupError, _handle_lookup_error)  # type: ignore[arg-type]
    app.add_exception_handler(ConflictError, _handle_conflict)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)


__all__ = ["CatchAllErrorMiddleware", "register_error_handlers"]
