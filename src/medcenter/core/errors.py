"""
src/medcenter/core/errors.py

Domain error taxonomy. Services raise these; the request boundary
(core/error_handlers.py) turns them into the standard failure envelope.
"""
from __future__ import annotations

__all__ = [
    "ServiceError",
    "ValidationFailed",
    "NotFound",
    "Conflict",
    "AuthError",
    "Forbidden",
]


class ServiceError(Exception):
    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message or (code or self.default_code))
        self.message = message or "Unexpected server error"
        self.code = code or self.default_code


class ValidationFailed(ServiceError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFound(ServiceError):
    status_code = 404
    default_code = "NOT_FOUND"


class Conflict(ServiceError):
    status_code = 409
    default_code = "CONFLICT"


class Forbidden(ServiceError):
    status_code = 403
    default_code = "FORBIDDEN"


class AuthError(ServiceError):
    """Authentication failure; ``reason`` lets clients tell expiry from garbage."""

    status_code = 401
    default_code = "AUTH_ERROR"

    REASONS = frozenset({
        "missing_token",
        "token_expired",
        "token_invalid",
        "user_inactive",
        "invalid_credentials",
    })

    def __init__(self, reason: str, message: str = "") -> None:
        if reason not in self.REASONS:
            raise ValueError(f"unknown auth failure reason: {reason}")
        super().__init__(message or reason.replace("_", " "), code=reason.upper())
        self.reason = reason
