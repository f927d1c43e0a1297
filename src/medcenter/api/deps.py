from __future__ import annotations

from typing import AsyncIterator

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.config import Settings
from medcenter.core.errors import AuthError, Forbidden
from medcenter.core.logging import owner_id_ctx
from medcenter.db import session_scope
from medcenter.models import User, UserRole
from medcenter.security import decode_access_token
from medcenter.services.audit import AuditRecorder
from medcenter.services.reports import ReportBuilder

_bearer = HTTPBearer(auto_error=False)


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """
    One transaction per request: commit on success, rollback on any error.
    """
    async with session_scope(request.app.state.session_factory) as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_audit(request: Request) -> AuditRecorder:
    return request.app.state.audit


def get_report_builder(request: Request) -> ReportBuilder:
    return request.app.state.report_builder


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    session: AsyncSession = Depends(get_session),
) -> User:
    if credentials is None or not credentials.credentials:
        raise AuthError("missing_token", "Access token required")

    user_id = decode_access_token(credentials.credentials, request.app.state.settings)
    user = await session.get(User, user_id)
    if user is None:
        raise AuthError("token_invalid", "Invalid token")
    if not user.is_active:
        raise AuthError("user_inactive", "User account is inactive")

    owner_id_ctx.set(str(user.id))
    request.state.owner_id = str(user.id)
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise Forbidden("Administrator role required")
    return user
