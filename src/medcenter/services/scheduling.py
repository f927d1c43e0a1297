"""
Appointment scheduling: conflict detection and lifecycle.

Two appointments of the same owner on the same date conflict when their
half-open ``[start, end)`` intervals overlap and neither is cancelled.
Touching endpoints (09:00-09:30 and 09:30-10:00) never conflict.

The conflict check and the write it guards run in one transaction and are
serialized per ``(owner, date)``: in-process with an asyncio lock and, on
PostgreSQL, with a transaction-scoped advisory lock.
"""
from __future__ import annotations

import logging
import math
from datetime import date, time
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.core.dates import parse_iso_date
from medcenter.core.errors import Conflict, NotFound, ValidationFailed
from medcenter.models import (
    Appointment,
    AppointmentCategory,
    AppointmentStatus,
    Patient,
)
from medcenter.services.audit import AuditRecorder
from medcenter.services.locks import KeyedLocks, hold_for_transaction

_log = logging.getLogger("medcenter.scheduling")

SLOT_OCCUPIED = "Time slot occupied: another appointment already exists in that range"

_TIME_FIELDS = frozenset({"date", "start_time", "end_time"})
_NOT_NULL = _TIME_FIELDS | {"patient_id", "category", "title", "status", "reminder_sent"}
_UPDATABLE = frozenset({
    "patient_id", "category", "title", "description", "notes",
    "date", "start_time", "end_time", "status", "reminder_sent",
})


def intervals_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open interval overlap: back-to-back slots do not overlap."""
    return start_a < end_b and end_a > start_b


# ── Per-slot serialization ───────────────────────────────────────────────────

class SlotLocks(KeyedLocks):
    """Keyed by ``(owner_id, date)``."""


_default_slot_locks: SlotLocks | None = None


def get_slot_locks() -> SlotLocks:
    global _default_slot_locks
    if _default_slot_locks is None:
        _default_slot_locks = SlotLocks()
    return _default_slot_locks


# ── Conflict detector ────────────────────────────────────────────────────────

class ConflictDetector:
    def __init__(self, session: AsyncSession, locks: SlotLocks | None = None) -> None:
        self.session = session
        self.locks = locks or get_slot_locks()

    async def find_conflict(
        self,
        owner_id: UUID,
        day: date,
        start: time,
        end: time,
        exclude_id: UUID | None = None,
    ) -> Appointment | None:
        stmt = (
            select(Appointment)
            .where(
                Appointment.owner_id == owner_id,
                Appointment.date == day,
                Appointment.status != AppointmentStatus.CANCELLED.value,
                Appointment.start_time < end,
                Appointment.end_time > start,
            )
            .order_by(Appointment.start_time)
            .limit(1)
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)
        return (await self.session.execute(stmt)).scalars().first()

    async def ensure_free(
        self,
        owner_id: UUID,
        day: date,
        start: time,
        end: time,
        exclude_id: UUID | None = None,
    ) -> None:
        existing = await self.find_conflict(owner_id, day, start, end, exclude_id)
        if existing is not None:
            _log.info(
                "slot conflict owner=%s date=%s %s-%s with appointment=%s",
                owner_id, day, start, end, existing.id,
            )
            raise Conflict(SLOT_OCCUPIED, code="SLOT_OCCUPIED")

    async def guard(self, owner_id: UUID, day: date) -> None:
        """Serialize check-then-write for one (owner, date) slot.

        The slot stays locked until the session's outermost transaction
        commits or rolls back, so a concurrent writer always sees our row.
        """
        await hold_for_transaction(self.session, self.locks, (owner_id, day))


# ── Lifecycle manager ────────────────────────────────────────────────────────

def _check_order(start: time, end: time) -> None:
    if not start < end:
        raise ValidationFailed("start_time must be earlier than end_time")


class AppointmentService:
    def __init__(
        self,
        session: AsyncSession,
        audit: AuditRecorder | None = None,
        locks: SlotLocks | None = None,
    ) -> None:
        self.session = session
        self.audit = audit
        self.detector = ConflictDetector(session, locks)

    def _audit(self, owner_id: UUID, action: str, appt: Appointment, description: str) -> None:
        if self.audit is not None:
            self.audit.record(
                owner_id,
                action,
                description=description,
                entity_type="appointment",
                entity_id=appt.id,
                meta={"date": appt.date.isoformat(), "status": appt.status},
                session=self.session,
            )

    async def _active_patient(self, patient_id: UUID) -> Patient:
        patient = (
            await self.session.execute(
                select(Patient).where(Patient.id == patient_id, Patient.is_active.is_(True))
            )
        ).scalars().first()
        if patient is None:
            raise NotFound("Patient not found")
        return patient

    async def create(
        self,
        owner_id: UUID,
        *,
        patient_id: UUID,
        category: str,
        title: str,
        date: date | str,
        start_time: time,
        end_time: time,
        description: str | None = None,
        notes: str | None = None,
    ) -> Appointment:
        title = (title or "").strip()
        if not title:
            raise ValidationFailed("title is required")
        if category not in AppointmentCategory.__members__.values():
            raise ValidationFailed(f"Invalid category '{category}'")
        day = parse_iso_date(date)
        _check_order(start_time, end_time)

        await self._active_patient(patient_id)

        await self.detector.guard(owner_id, day)
        await self.detector.ensure_free(owner_id, day, start_time, end_time)
        appt = Appointment(
            patient_id=patient_id,
            owner_id=owner_id,
            category=str(category),
            title=title,
            description=description,
            notes=notes,
            date=day,
            start_time=start_time,
            end_time=end_time,
            status=AppointmentStatus.SCHEDULED.value,
        )
        self.session.add(appt)
        await self.session.flush()

        await self.session.refresh(appt, ["patient"])
        self._audit(owner_id, "appointment.create", appt, f"Created appointment '{appt.title}'")
        return appt

    async def get(self, owner_id: UUID, appointment_id: UUID) -> Appointment:
        appt = (
            await self.session.execute(
                select(Appointment).where(
                    Appointment.id == appointment_id,
                    Appointment.owner_id == owner_id,
                )
            )
        ).scalars().first()
        if appt is None:
            raise NotFound("Appointment not found")
        return appt

    async def list(
        self,
        owner_id: UUID,
        *,
        day: date | str | None = None,
        status: str | None = None,
        category: str | None = None,
        patient_id: UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Appointment], dict[str, int]]:
        conditions = [Appointment.owner_id == owner_id]
        if day:
            conditions.append(Appointment.date == parse_iso_date(day))
        if status:
            conditions.append(Appointment.status == status)
        if category:
            conditions.append(Appointment.category == category)
        if patient_id:
            conditions.append(Appointment.patient_id == patient_id)

        total = (
            await self.session.execute(select(func.count(Appointment.id)).where(*conditions))
        ).scalar_one()
        rows = (
            await self.session.execute(
                select(Appointment)
                .where(*conditions)
                .order_by(Appointment.date.asc(), Appointment.start_time.asc())
                .limit(limit)
                .offset((page - 1) * limit)
            )
        ).scalars().all()
        pagination = {
            "total": int(total),
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if limit else 0,
        }
        return list(rows), pagination

    async def list_for_day(self, owner_id: UUID, day: date | str) -> list[Appointment]:
        rows = (
            await self.session.execute(
                select(Appointment)
                .where(Appointment.owner_id == owner_id, Appointment.date == parse_iso_date(day))
                .order_by(Appointment.start_time.asc())
            )
        ).scalars().all()
        return list(rows)

    async def update(self, owner_id: UUID, appointment_id: UUID, patch: dict[str, Any]) -> Appointment:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValidationFailed(f"Fields not updatable: {', '.join(sorted(unknown))}")

        appt = await self.get(owner_id, appointment_id)
        changes = {k: v for k, v in patch.items()}

        if "title" in changes and changes["title"] is not None:
            changes["title"] = (changes["title"] or "").strip()
            if not changes["title"]:
                raise ValidationFailed("title cannot be empty")
        if changes.get("category") is not None and changes["category"] not in AppointmentCategory.__members__.values():
            raise ValidationFailed(f"Invalid category '{changes['category']}'")
        if changes.get("status") is not None and changes["status"] not in AppointmentStatus.__members__.values():
            raise ValidationFailed(f"Invalid status '{changes['status']}'")
        if changes.get("patient_id") is not None:
            await self._active_patient(changes["patient_id"])
        if changes.get("date") is not None:
            changes["date"] = parse_iso_date(changes["date"])

        touches_time = any(changes.get(f) is not None for f in _TIME_FIELDS)
        reactivates = (
            appt.status == AppointmentStatus.CANCELLED
            and changes.get("status") not in (None, AppointmentStatus.CANCELLED)
        )
        final_status = changes.get("status") or appt.status
        day = changes.get("date") or appt.date
        start = changes.get("start_time") or appt.start_time
        end = changes.get("end_time") or appt.end_time
        if touches_time:
            _check_order(start, end)
        if (touches_time or reactivates) and final_status != AppointmentStatus.CANCELLED:
            await self.detector.guard(owner_id, day)
            await self.detector.ensure_free(owner_id, day, start, end, exclude_id=appt.id)
        self._apply(appt, changes)
        await self.session.flush()

        await self.session.refresh(appt)
        self._audit(owner_id, "appointment.update", appt, f"Updated appointment '{appt.title}'")
        return appt

    @staticmethod
    def _apply(appt: Appointment, changes: dict[str, Any]) -> None:
        for field, value in changes.items():
            if value is None and field in _NOT_NULL:
                continue
            setattr(appt, field, str(value) if field in {"category", "status"} else value)

    async def change_status(
        self,
        owner_id: UUID,
        appointment_id: UUID,
        status: str,
        notes: str | None = None,
    ) -> Appointment:
        valid = [s.value for s in AppointmentStatus]
        if not status or status not in valid:
            raise ValidationFailed(f"Invalid status. Valid statuses: {', '.join(valid)}")

        appt = await self.get(owner_id, appointment_id)
        previous = appt.status
        if previous == AppointmentStatus.CANCELLED and status != AppointmentStatus.CANCELLED:
            await self.detector.guard(owner_id, appt.date)
            await self.detector.ensure_free(owner_id, appt.date, appt.start_time, appt.end_time, exclude_id=appt.id)
        appt.status = str(status)
        if notes:
            appt.notes = notes
        await self.session.flush()

        if self.audit is not None:
            self.audit.record(
                owner_id,
                "appointment.status",
                description=f"Appointment marked as {appt.status}",
                entity_type="appointment",
                entity_id=appt.id,
                meta={"from": previous, "to": appt.status},
                session=self.session,
            )
        return appt

    async def delete(self, owner_id: UUID, appointment_id: UUID) -> None:
        appt = await self.get(owner_id, appointment_id)
        await self.session.delete(appt)
        await self.session.flush()
        self._audit(owner_id, "appointment.delete", appt, f"Deleted appointment '{appt.title}'")


async def pending_reminders(session: AsyncSession, day: date | str) -> list[Appointment]:
    """Scheduled appointments on ``day`` that have not been reminded yet."""
    rows = (
        await session.execute(
            select(Appointment)
            .where(
                Appointment.date == parse_iso_date(day),
                Appointment.status == AppointmentStatus.SCHEDULED.value,
                Appointment.reminder_sent.is_(False),
            )
            .order_by(Appointment.start_time.asc())
        )
    ).scalars().all()
    return list(rows)
