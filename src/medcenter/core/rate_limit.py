"""
src/medcenter/core/rate_limit.py

Caller-level in-memory sliding-window rate limiter.

Defaults: RATE_LIMIT_PER_MINUTE requests per 60-second window per caller.
A caller is the user behind a verified bearer token, otherwise the client
address. Returns HTTP 429 when exceeded. Idle buckets are dropped by the
``rate_limit_eviction`` job.

Design:
- asyncio.Lock per caller bucket (no global lock contention)
- deque of timestamps, O(1) amortised per call
- health checks and API docs are never limited
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable, Awaitable
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from medcenter.config import Settings
from medcenter.core.error_handlers import error_body
from medcenter.core.errors import AuthError
from medcenter.security import decode_access_token

__all__ = [
    "CallerRateLimiter",
    "RateLimitMiddleware",
    "caller_key",
]


class CallerRateLimiter:
    """
    Sliding-window rate limiter keyed on an arbitrary string.

    Async-safe: one asyncio.Lock per bucket.
    Call `evict_inactive()` periodically to drop idle callers.
    """

    def __init__(self, limit: int = 120, window_seconds: float = 60.0) -> None:
        self.limit = limit
        self.window = window_seconds
        self._buckets: dict[str, deque[float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._meta_lock = asyncio.Lock()

    async def _get_bucket(self, key: str) -> tuple[deque[float], asyncio.Lock]:
        async with self._meta_lock:
            if key not in self._buckets:
                self._buckets[key] = deque()
                self._locks[key] = asyncio.Lock()
            return self._buckets[key], self._locks[key]

    async def is_allowed(self, key: str) -> bool:
        """Return True if the request is within quota, False if rate-limited."""
        bucket, lock = await self._get_bucket(key)
        now = time.monotonic()
        cutoff = now - self.window

        async with lock:
            # evict timestamps outside the window
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()

            if len(bucket) >= self.limit:
                return False

            bucket.append(now)
            return True

    async def evict_inactive(self, idle_seconds: float = 300.0) -> int:
        """Remove buckets whose last request was more than idle_seconds ago."""
        now = time.monotonic()
        cutoff = now - idle_seconds
        async with self._meta_lock:
            stale = [
                k for k, dq in self._buckets.items()
                if not dq or dq[-1] <= cutoff
            ]
            for k in stale:
                del self._buckets[k]
                del self._locks[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)


def caller_key(request: Request, settings: Settings | None = None) -> str:
    """Bucket for a request: the verified user, otherwise the client address.

    A bearer token only selects a per-user bucket once its signature and
    expiry check out; junk or expired tokens count against the address.
    """
    auth = request.headers.get("Authorization", "")
    token = auth[7:].strip() if auth[:7].lower() == "bearer " else ""
    if token and settings is not None:
        try:
            return f"user:{decode_access_token(token, settings)}"
        except AuthError:
            pass
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware that rate-limits every request except the skip list."""

    _SKIP_PATHS = frozenset({
        "/health/live", "/health/ready",
        "/docs", "/openapi.json", "/redoc",
    })

    def __init__(
        self,
        app: Any,
        limiter: CallerRateLimiter | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(app)
        self._limiter = limiter or CallerRateLimiter()
        self._settings = settings

    async def dispatch(self, request: Request, call_next: Callable[..., Awaitable[Response]]) -> Response:
        if request.url.path in self._SKIP_PATHS:
            return await call_next(request)

        allowed = await self._limiter.is_allowed(caller_key(request, self._settings))
        if not allowed:
            return JSONResponse(
                status_code=429,
                content=error_body(
                    f"Rate limit exceeded. Max {self._limiter.limit} requests per minute.",
                    429,
                    request,
                ),
            )

        return await call_next(request)
