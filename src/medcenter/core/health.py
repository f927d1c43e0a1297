"""
src/medcenter/core/health.py

Liveness and readiness checks.

GET /health/live : 200 while the process serves requests
GET /health/ready: 200 once ``SELECT 1`` succeeds through the app's own
                   session factory, 503 when it fails or exceeds the timeout
"""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

_log = logging.getLogger("medcenter.health")

router = APIRouter(tags=["health"])

DB_PING_TIMEOUT = 3.0  # seconds


def _health_response(status_code: int, **fields: str) -> JSONResponse:
    status = "ok" if status_code == 200 else "error"
    return JSONResponse(status_code=status_code, content={"status": status, **fields})


@router.get("/health/live")
async def health_live() -> JSONResponse:
    return _health_response(200, check="live")


@router.get("/health/ready")
async def health_ready(request: Request) -> JSONResponse:
    """Pings the database the request handlers use (``app.state.session_factory``)."""
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        _log.error("health_ready: app has no session factory")
        return _health_response(503, check="ready", db="unconfigured")

    try:
        async with asyncio.timeout(DB_PING_TIMEOUT):
            async with factory() as session:
                await session.execute(text("SELECT 1"))
    except TimeoutError:
        _log.error("health_ready: DB ping timed out after %.1fs", DB_PING_TIMEOUT)
        return _health_response(503, check="ready", db="timeout")
    except Exception as exc:
        _log.error("health_ready: DB unreachable: %s", exc)
        return _health_response(503, check="ready", db="unreachable")
    return _health_response(200, check="ready", db="reachable")
