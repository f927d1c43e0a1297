from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_current_user, get_session
from medcenter.api.schemas import AuditIn, AuditOut, envelope
from medcenter.models import User
from medcenter.services.audit import create_entry, list_entries

router = APIRouter(prefix="/audit", tags=["audit"])


@router.post("", status_code=201)
async def create_audit_entry(
    payload: AuditIn,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    entry = await create_entry(
        session,
        user.id,
        payload.action.strip(),
        description=payload.description,
        entity_type=payload.entity_type,
        entity_id=payload.entity_id,
        meta=payload.meta,
    )
    return envelope(AuditOut.model_validate(entry).json_dict(), "Audit entry recorded")


@router.get("")
async def list_audit_entries(
    action: str | None = None,
    entity_type: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    rows, total = await list_entries(
        session, user.id, action=action, entity_type=entity_type, page=page, limit=limit
    )
    return envelope({
        "entries": [AuditOut.model_validate(e).json_dict() for e in rows],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": -(-total // limit),
        },
    })
