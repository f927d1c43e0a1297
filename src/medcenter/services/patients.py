"""Patient registry: sequential codes, search and soft delete."""
from __future__ import annotations

import logging
import math
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.core.errors import Conflict, NotFound, ValidationFailed
from medcenter.db import LIKE_ESCAPE, contains_pattern
from medcenter.models import Patient
from medcenter.services.audit import AuditRecorder
from medcenter.services.locks import KeyedLocks, hold_for_transaction

_log = logging.getLogger("medcenter.patients")

CODE_PREFIX = "P"

_UPDATABLE = frozenset({
    "name", "surname", "birth_date", "age", "phone", "address",
    "emergency_contact", "emergency_phone", "medical_history", "is_active",
})


def format_code(seq: int) -> str:
    return f"{CODE_PREFIX}{seq:04d}"


async def next_patient_code(session: AsyncSession) -> str:
    codes = (
        await session.execute(select(Patient.code).where(Patient.code.like(f"{CODE_PREFIX}%")))
    ).scalars().all()
    highest = 0
    for code in codes:
        suffix = code[len(CODE_PREFIX):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return format_code(highest + 1)


_code_locks = KeyedLocks()


async def allocate_patient_code(session: AsyncSession, locks: KeyedLocks | None = None) -> str:
    """Next free code, reserved for ``session`` until its transaction ends."""
    await hold_for_transaction(session, locks or _code_locks, "patient_code")
    return await next_patient_code(session)


class PatientService:
    def __init__(
        self,
        session: AsyncSession,
        audit: AuditRecorder | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.session = session
        self.audit = audit
        self.locks = locks

    async def create(self, actor_id: UUID, data: dict[str, Any]) -> Patient:
        name = (data.get("name") or "").strip()
        surname = (data.get("surname") or "").strip()
        if not name or not surname:
            raise ValidationFailed("name and surname are required")

        fields = {k: v for k, v in data.items() if k in _UPDATABLE}
        fields.update(name=name, surname=surname)
        patient = Patient(code=await allocate_patient_code(self.session, self.locks), **fields)
        self.session.add(patient)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # taken by a writer outside this process's lock
            _log.warning("patient code %s already taken: %s", patient.code, exc.orig)
            raise Conflict("Patient code already taken, please retry", code="PATIENT_CODE_TAKEN") from exc

        if self.audit is not None:
            self.audit.record(
                actor_id, "patient.create",
                description=f"Registered patient {patient.code}",
                entity_type="patient", entity_id=patient.id,
                session=self.session,
            )
        return patient

    async def get(self, patient_id: UUID, include_inactive: bool = False) -> Patient:
        patient = await self.session.get(Patient, patient_id)
        if patient is None or not (patient.is_active or include_inactive):
            raise NotFound("Patient not found")
        return patient

    async def list(
        self,
        *,
        search: str | None = None,
        include_inactive: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Patient], dict[str, int]]:
        conditions = []
        if not include_inactive:
            conditions.append(Patient.is_active.is_(True))
        if search:
            pattern = contains_pattern(search.strip().lower())
            conditions.append(
                or_(
                    func.lower(Patient.name).like(pattern, escape=LIKE_ESCAPE),
                    func.lower(Patient.surname).like(pattern, escape=LIKE_ESCAPE),
                    func.lower(Patient.code).like(pattern, escape=LIKE_ESCAPE),
                    Patient.phone.like(pattern, escape=LIKE_ESCAPE),
                )
            )

        total = (await self.session.execute(select(func.count(Patient.id)).where(*conditions))).scalar_one()
        rows = (
            await self.session.execute(
                select(Patient)
                .where(*conditions)
                .order_by(Patient.surname.asc(), Patient.name.asc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
        ).scalars().all()
        return list(rows), {
            "total": int(total),
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if limit else 0,
        }

    async def search(self, term: str, limit: int = 10) -> list[Patient]:
        """Quick lookup for pickers; active patients only."""
        if not term or len(term.strip()) < 2:
            return []
        rows, _ = await self.list(search=term, limit=limit)
        return rows

    async def update(self, actor_id: UUID, patient_id: UUID, patch: dict[str, Any]) -> Patient:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValidationFailed(f"Fields not updatable: {', '.join(sorted(unknown))}")
        patient = await self.get(patient_id)
        for field in ("name", "surname"):
            if field in patch:
                patch[field] = (patch[field] or "").strip()
                if not patch[field]:
                    raise ValidationFailed(f"{field} cannot be empty")
        for field, value in patch.items():
            setattr(patient, field, value)
        await self.session.flush()

        if self.audit is not None:
            self.audit.record(
                actor_id, "patient.update",
                description=f"Updated patient {patient.code}",
                entity_type="patient", entity_id=patient.id,
                meta={"fields": sorted(patch)},
                session=self.session,
            )
        return patient

    async def deactivate(self, actor_id: UUID, patient_id: UUID) -> Patient:
        """Soft delete: the row and its appointment history stay."""
        patient = await self.get(patient_id)
        patient.is_active = False
        await self.session.flush()
        _log.info("patient %s deactivated by %s", patient.code, actor_id)

        if self.audit is not None:
            self.audit.record(
                actor_id, "patient.deactivate",
                description=f"Deactivated patient {patient.code}",
                entity_type="patient", entity_id=patient.id,
                session=self.session,
            )
        return patient
