"""
src/medcenter/core/middleware.py

Request ID middleware for the MedCenter FastAPI app.

- Reuses a client-provided X-Request-ID or generates a UUID4
- Stores it in request_id_ctx and echoes it on every response
- Emits one access record per request with method, path, status,
  duration_ms and the authenticated owner as structured fields
  (health checks log at DEBUG)
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from medcenter.core.logging import owner_id_ctx, request_id_ctx

_log = logging.getLogger("medcenter.access")

_QUIET_PATHS = frozenset({"/health/live", "/health/ready"})


def _access_line(request: Request, status: int, started: float) -> None:
    duration_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if status >= 500:
        level = logging.ERROR
    elif request.url.path in _QUIET_PATHS:
        level = logging.DEBUG
    else:
        level = logging.INFO
    _log.log(
        level,
        "%s %s %d %.2fms",
        request.method, request.url.path, status, duration_ms,
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": status,
            "duration_ms": duration_ms,
            # set by the auth dependency, which runs in another context
            "owner_id": getattr(request.state, "owner_id", ""),
        },
    )


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assign a unique request_id to every incoming HTTP request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", "").strip() or str(uuid.uuid4())

        token_rid = request_id_ctx.set(request_id)
        token_oid = owner_id_ctx.set("")
        request.state.request_id = request_id

        started = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception:
            _access_line(request, 500, started)
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            _access_line(request, response.status_code, started)
            return response
        finally:
            request_id_ctx.reset(token_rid)
            owner_id_ctx.reset(token_oid)
