from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_audit, get_current_user, get_session
from medcenter.api.schemas import MovementIn, MovementOut, MovementUpdate, TotalsOut, envelope
from medcenter.models import User
from medcenter.services.audit import AuditRecorder
from medcenter.services.finance import MovementService

router = APIRouter(prefix="/movements", tags=["movements"])


def _service(
    session: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit),
) -> MovementService:
    return MovementService(session, audit)


def _out(movement) -> dict[str, Any]:
    return MovementOut.model_validate(movement).json_dict()


@router.post("", status_code=201)
async def create_movement(
    payload: MovementIn,
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    movement = await svc.create(user.id, payload.model_dump())
    return envelope(_out(movement), "Financial movement recorded")


@router.get("")
async def list_movements(
    date: str | None = None,
    direction: str | None = None,
    category: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    rows, pagination = await svc.list(
        user.id, day=date, direction=direction, category=category, page=page, limit=limit
    )
    return envelope({"movements": [_out(m) for m in rows], "pagination": pagination})


@router.get("/balance/{day}")
async def daily_balance(
    day: str,
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    totals, movements = await svc.balance_for_date(user.id, day)
    return envelope({
        "date": day,
        **TotalsOut.model_validate(totals).json_dict(),
        "movements": [_out(m) for m in movements],
    })


@router.get("/history")
async def movement_history(
    start: str | None = None,
    end: str | None = None,
    direction: str | None = None,
    category: str | None = None,
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    totals, movements = await svc.history(user.id, start, end, direction=direction, category=category)
    return envelope({
        "summary": TotalsOut.model_validate(totals).json_dict(),
        "movements": [_out(m) for m in movements],
    })


@router.get("/{movement_id}")
async def get_movement(
    movement_id: UUID,
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    return envelope(_out(await svc.get(user.id, movement_id)))


@router.put("/{movement_id}")
async def update_movement(
    movement_id: UUID,
    payload: MovementUpdate,
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    movement = await svc.update(user.id, movement_id, payload.model_dump(exclude_unset=True))
    return envelope(_out(movement), "Financial movement updated")


@router.delete("/{movement_id}")
async def delete_movement(
    movement_id: UUID,
    user: User = Depends(get_current_user),
    svc: MovementService = Depends(_service),
) -> dict[str, Any]:
    await svc.delete(user.id, movement_id)
    return envelope(None, "Financial movement deleted")
