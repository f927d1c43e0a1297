"""
src/medcenter/core/error_handlers.py

Unified exception handlers for the MedCenter FastAPI app.

All errors return:
    {
        "success": false,
        "message": "<human readable message>",
        "error": "<machine code>",
        "code": <http_status_int>,
        "request_id": "<uuid | null>"
    }

Stack traces are NEVER exposed in the response body.
They are logged server-side (ERROR level) for 5xx cases. Outside
production the exception text is added as ``detail`` to ease debugging.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from medcenter.core.errors import AuthError, ServiceError

_log = logging.getLogger("medcenter.errors")

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "AUTH_ERROR",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def error_body(message: str, status: int, request: Request, error: str | None = None) -> dict:
    return {
        "success": False,
        "message": message,
        "error": error or _HTTP_CODES.get(status, "INTERNAL_ERROR" if status >= 500 else "ERROR"),
        "code": status,
        "request_id": _request_id(request),
    }


def register_error_handlers(app: FastAPI, production: bool = False) -> None:
    """Attach all unified error handlers to the given FastAPI app."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.status_code >= 500:
            _log.error("service error %s path=%s", exc.code, request.url.path)
        else:
            _log.info("%s %s path=%s", exc.code, exc.message, request.url.path)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.status_code, request, exc.code),
            headers=headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = str(exc.detail) if exc.detail else "Request error"
        if exc.status_code >= 500:
            _log.error(
                "HTTP %d %s path=%s",
                exc.status_code,
                detail,
                request.url.path,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(detail, exc.status_code, request),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        _log.warning("Validation error path=%s", request.url.path)
        body = error_body("Invalid request body or parameters", 422, request, "VALIDATION_ERROR")
        if not production:
            body["detail"] = exc.errors()
        return JSONResponse(status_code=422, content=jsonable_encoder(body, custom_encoder={Exception: str}))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        _log.exception("Unhandled exception path=%s", request.url.path)
        body = error_body("Unexpected server error", 500, request, "INTERNAL_ERROR")
        if not production:
            body["detail"] = f"{type(exc).__name__}: {exc}"
        return JSONResponse(status_code=500, content=body)

