from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_audit, get_current_user, get_session
from medcenter.api.schemas import PatientIn, PatientOut, PatientUpdate, envelope
from medcenter.models import User
from medcenter.services.audit import AuditRecorder
from medcenter.services.patients import PatientService

router = APIRouter(prefix="/patients", tags=["patients"])


def _service(
    session: AsyncSession = Depends(get_session),
    audit: AuditRecorder = Depends(get_audit),
) -> PatientService:
    return PatientService(session, audit)


@router.post("", status_code=201)
async def create_patient(
    payload: PatientIn,
    user: User = Depends(get_current_user),
    svc: PatientService = Depends(_service),
) -> dict[str, Any]:
    patient = await svc.create(user.id, payload.model_dump())
    return envelope(PatientOut.model_validate(patient).json_dict(), "Patient created")


@router.get("")
async def list_patients(
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    svc: PatientService = Depends(_service),
) -> dict[str, Any]:
    rows, pagination = await svc.list(search=search, page=page, limit=limit)
    return envelope({
        "patients": [PatientOut.model_validate(p).json_dict() for p in rows],
        "pagination": pagination,
    })


@router.get("/search")
async def search_patients(
    q: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=50),
    user: User = Depends(get_current_user),
    svc: PatientService = Depends(_service),
) -> dict[str, Any]:
    rows = await svc.search(q, limit)
    return envelope([PatientOut.model_validate(p).json_dict() for p in rows])


@router.get("/{patient_id}")
async def get_patient(
    patient_id: UUID,
    user: User = Depends(get_current_user),
    svc: PatientService = Depends(_service),
) -> dict[str, Any]:
    return envelope(PatientOut.model_validate(await svc.get(patient_id)).json_dict())


@router.put("/{patient_id}")
async def update_patient(
    patient_id: UUID,
    payload: PatientUpdate,
    user: User = Depends(get_current_user),
    svc: PatientService = Depends(_service),
) -> dict[str, Any]:
    patient = await svc.update(user.id, patient_id, payload.model_dump(exclude_unset=True))
    return envelope(PatientOut.model_validate(patient).json_dict(), "Patient updated")


@router.delete("/{patient_id}")
async def delete_patient(
    patient_id: UUID,
    user: User = Depends(get_current_user),
    svc: PatientService = Depends(_service),
) -> dict[str, Any]:
    await svc.deactivate(user.id, patient_id)
    return envelope(None, "Patient deactivated")
