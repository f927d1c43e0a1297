"""
Authentication endpoints.

POST /api/auth/login    : email + password → bearer token
GET  /api/auth/profile  : current user
PUT  /api/auth/profile  : update name / email
PUT  /api/auth/password : change password (current one required)
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_app_settings, get_audit, get_current_user, get_session
from medcenter.api.schemas import LoginIn, PasswordChange, ProfileUpdate, UserOut, envelope
from medcenter.config import Settings
from medcenter.core.errors import AuthError, Conflict, ValidationFailed
from medcenter.models import User
from medcenter.security import create_access_token, hash_password, verify_password
from medcenter.services.audit import AuditRecorder

_log = logging.getLogger("medcenter.auth")

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login")
async def login(
    payload: LoginIn,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    email = payload.email.strip().lower()
    user = (
        await session.execute(select(User).where(func.lower(User.email) == email))
    ).scalars().first()

    if user is None or not verify_password(payload.password, user.password_hash):
        _log.info("failed login for %s", email)
        raise AuthError("invalid_credentials", "Invalid email or password")
    if not user.is_active:
        raise AuthError("user_inactive", "User account is inactive")

    user.last_login_at = datetime.now(timezone.utc)
    await session.flush()
    audit.record(
        user.id, "auth.login", description="Signed in",
        entity_type="user", entity_id=user.id, session=session,
    )

    return envelope(
        {
            "token": create_access_token(user.id, settings),
            "token_type": "bearer",
            "expires_in": settings.JWT_EXPIRE_HOURS * 3600,
            "user": UserOut.model_validate(user).json_dict(),
        },
        "Login successful",
    )


@router.get("/profile")
async def get_profile(user: User = Depends(get_current_user)) -> dict[str, Any]:
    return envelope(UserOut.model_validate(user).json_dict())


@router.put("/profile")
async def update_profile(
    payload: ProfileUpdate,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    if payload.email is not None:
        email = payload.email.strip().lower()
        taken = (
            await session.execute(
                select(User.id).where(func.lower(User.email) == email, User.id != user.id)
            )
        ).first()
        if taken is not None:
            raise Conflict("Email already in use", code="EMAIL_TAKEN")
        user.email = email
    if payload.name is not None:
        name = payload.name.strip()
        if not name:
            raise ValidationFailed("name cannot be empty")
        user.name = name
    await session.flush()

    audit.record(
        user.id, "auth.profile", description="Profile updated",
        entity_type="user", entity_id=user.id, session=session,
    )
    return envelope(UserOut.model_validate(user).json_dict(), "Profile updated")


@router.put("/password")
async def change_password(
    payload: PasswordChange,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    if not verify_password(payload.current_password, user.password_hash):
        raise ValidationFailed("Current password is incorrect", code="INVALID_PASSWORD")
    user.password_hash = hash_password(payload.new_password)
    await session.flush()

    audit.record(
        user.id, "auth.password", description="Password changed",
        entity_type="user", entity_id=user.id, session=session,
    )
    return envelope(None, "Password updated")
