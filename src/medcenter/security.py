"""
Password hashing and bearer-token helpers.
Tokens are HS256 JWTs carrying the user id in ``sub``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from medcenter.config import Settings
from medcenter.core.errors import AuthError

_log = logging.getLogger("medcenter.auth")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        # unknown / corrupted hash format
        return False


def create_access_token(user_id: UUID, settings: Settings, now: datetime | None = None) -> str:
    issued = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(hours=settings.JWT_EXPIRE_HOURS)).timestamp()),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str, settings: Settings) -> UUID:
    """Return the user id of a valid token.

    Raises AuthError("token_expired") for expired tokens so clients can
    refresh silently, AuthError("token_invalid") for everything else.
    """
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AuthError("token_expired", "Token expired") from exc
    except JWTError as exc:
        _log.info("rejected bearer token: %s", exc)
        raise AuthError("token_invalid", "Invalid token") from exc

    try:
        return UUID(str(claims.get("sub")))
    except ValueError as exc:
        raise AuthError("token_invalid", "Invalid token") from exc
