from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_audit, get_current_user, get_session
from medcenter.api.schemas import AppointmentIn, AppointmentOut, AppointmentUpdate, StatusChange, envelope
from medcenter.models import User
from medcenter.services.audit import AuditRecorder
from medcenter.services.scheduling import AppointmentService

router = APIRouter(prefix="/appointments", tags=["appointments"])


def _service(
    session: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit),
) -> AppointmentService:
    return AppointmentService(session, audit)


def _out(appt) -> dict[str, Any]:
    return AppointmentOut.model_validate(appt).json_dict()


@router.post("", status_code=201)
async def create_appointment(
    payload: AppointmentIn,
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    appt = await svc.create(user.id, **payload.model_dump())
    return envelope(_out(appt), "Appointment created")


@router.get("")
async def list_appointments(
    date: str | None = None,
    status: str | None = None,
    category: str | None = None,
    patient_id: UUID | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    rows, pagination = await svc.list(
        user.id,
        day=date,
        status=status,
        category=category,
        patient_id=patient_id,
        page=page,
        limit=limit,
    )
    return envelope({"appointments": [_out(a) for a in rows], "pagination": pagination})


@router.get("/day/{day}")
async def appointments_for_day(
    day: str,
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    rows = await svc.list_for_day(user.id, day)
    return envelope({"date": day, "appointments": [_out(a) for a in rows]})


@router.get("/{appointment_id}")
async def get_appointment(
    appointment_id: UUID,
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    return envelope(_out(await svc.get(user.id, appointment_id)))


@router.put("/{appointment_id}")
async def update_appointment(
    appointment_id: UUID,
    payload: AppointmentUpdate,
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    appt = await svc.update(user.id, appointment_id, payload.model_dump(exclude_unset=True))
    return envelope(_out(appt), "Appointment updated")


@router.patch("/{appointment_id}/status")
async def change_appointment_status(
    appointment_id: UUID,
    payload: StatusChange,
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    appt = await svc.change_status(user.id, appointment_id, payload.status, payload.notes)
    return envelope(_out(appt), "Appointment status updated")


@router.delete("/{appointment_id}")
async def delete_appointment(
    appointment_id: UUID,
    user: User = Depends(get_current_user),
    svc: AppointmentService = Depends(_service),
) -> dict[str, Any]:
    await svc.delete(user.id, appointment_id)
    return envelope(None, "Appointment deleted")
