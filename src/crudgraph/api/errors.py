"""
Error mapper - converts engine and framework errors into the error envelope.

Every error response has the shape:

    {"error": "<stable kind>", "message": "<human readable>", "details": {...}}

Raw driver messages and tracebacks only appear in details when debug is on.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crudgraph.core.errors import (
    ConflictViolationError,
    CrudGraphError,
    ExecutorError,
    FieldViolation,
    ValidationError,
)
from crudgraph.core.query_types import ErrorEnvelope

logger = logging.getLogger(__name__)


class ErrorMapper:
    """
    Maps exceptions to (status_code, body).

    Usage:
        mapper = ErrorMapper(debug=settings.debug)
        status_code, body = mapper.to_response(exc)
    """

    def __init__(self, debug: bool = False):
        self.debug = debug

    def to_response(self, exc: Exception) -> tuple[int, dict[str, Any]]:
        if isinstance(exc, ValidationError):
            return exc.status_code, self._envelope(
                exc.error,
                exc.message,
                {
                    "message": exc.message,
                    "validation_errors": [v.to_dict() for v in exc.violations],
                },
            )

        if isinstance(exc, ConflictViolationError):
            details: dict[str, Any] = {"fields": list(exc.fields), "message": exc.message}
            if exc.violations:
                details["validation_errors"] = [v.to_dict() for v in exc.violations]
            return exc.status_code, self._envelope(exc.error, exc.message, details)

        if isinstance(exc, ExecutorError):
            details = {"detail": exc.detail} if self.debug and exc.detail else {}
            return exc.status_code, self._envelope(exc.error, exc.message, details)

        if isinstance(exc, CrudGraphError):
            message = getattr(exc, "message", None) or str(exc)
            return exc.status_code, self._envelope(exc.error, message)

        details = {"exception": repr(exc)} if self.debug else {}
        return 500, self._envelope("Internal server error", "An unexpected error occurred", details)

    def http_error(self, status_code: int, detail: Any) -> dict[str, Any]:
        """Envelope for framework-raised HTTP errors (unknown route, wrong method)."""
        try:
            phrase = HTTPStatus(status_code).phrase
        except ValueError:
            phrase = "Error"
        error = {404: "Not found", 405: "Method not allowed"}.get(status_code, phrase)
        message = detail if isinstance(detail, str) else phrase
        return self._envelope(error, message)

    def _envelope(self, error: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
        return ErrorEnvelope(error=error, message=message, details=details or {}).model_dump()


def install_error_handlers(app: FastAPI, mapper: ErrorMapper):
    """Register exception handlers that answer with the error envelope."""

    @app.exception_handler(CrudGraphError)
    async def crudgraph_error_handler(request: Request, exc: CrudGraphError):
        status_code, body = mapper.to_response(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=exc)
        else:
            logger.debug(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(body, status_code=status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            mapper.http_error(exc.status_code, exc.detail),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        violations = [
            FieldViolation(".".join(str(p) for p in error.get("loc", ()) if p != "body") or "body", error.get("msg", ""))
            for error in exc.errors()
        ]
        status_code, body = mapper.to_response(ValidationError(violations))
        return JSONResponse(body, status_code=status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        status_code, body = mapper.to_response(exc)
        return JSONResponse(body, status_code=status_code)
