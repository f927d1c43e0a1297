# src/medcenter/api/schemas.py
from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from medcenter.models import AppointmentCategory

# amounts are validated by the finance service, not here
AmountIn = Union[str, int, float, Decimal]


def envelope(data: Any = None, message: str = "OK") -> dict[str, Any]:
    return {"success": True, "message": message, "data": data}


class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    def json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


# ── Auth ─────────────────────────────────────────────────────────────────────

class LoginIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=320)


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class UserOut(_Out):
    id: UUID
    name: str
    email: str
    role: str
    is_active: bool
    last_login_at: Optional[dt.datetime] = None


# ── Patients ─────────────────────────────────────────────────────────────────

class PatientIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    surname: str = Field(..., min_length=1, max_length=100)
    birth_date: Optional[dt.date] = None
    age: Optional[int] = Field(None, ge=0, le=150)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    emergency_contact: Optional[str] = Field(None, max_length=100)
    emergency_phone: Optional[str] = Field(None, max_length=20)
    medical_history: Optional[str] = None


class PatientUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    surname: Optional[str] = Field(None, max_length=100)
    birth_date: Optional[dt.date] = None
    age: Optional[int] = Field(None, ge=0, le=150)
    phone: Optional[str] = Field(None, max_length=20)
    address: Optional[str] = None
    emergency_contact: Optional[str] = Field(None, max_length=100)
    emergency_phone: Optional[str] = Field(None, max_length=20)
    medical_history: Optional[str] = None


class PatientBrief(_Out):
    id: UUID
    code: str
    name: str
    surname: str
    phone: Optional[str] = None


class PatientOut(PatientBrief):
    full_name: str
    birth_date: Optional[dt.date] = None
    age: Optional[int] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_history: Optional[str] = None
    is_active: bool
    created_at: dt.datetime


# ── Appointments ─────────────────────────────────────────────────────────────

class AppointmentIn(BaseModel):
    patient_id: UUID
    category: AppointmentCategory
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    notes: Optional[str] = None
    date: dt.date
    start_time: dt.time
    end_time: dt.time

    @model_validator(mode="after")
    def _check_times(self) -> "AppointmentIn":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be earlier than end_time")
        return self


class AppointmentUpdate(BaseModel):
    patient_id: Optional[UUID] = None
    category: Optional[AppointmentCategory] = None
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    notes: Optional[str] = None
    date: Optional[dt.date] = None
    start_time: Optional[dt.time] = None
    end_time: Optional[dt.time] = None
    status: Optional[str] = None
    reminder_sent: Optional[bool] = None


class StatusChange(BaseModel):
    status: str
    notes: Optional[str] = None


class AppointmentOut(_Out):
    id: UUID
    patient_id: UUID
    owner_id: UUID
    category: str
    title: str
    description: Optional[str] = None
    notes: Optional[str] = None
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    status: str
    reminder_sent: bool
    patient: Optional[PatientBrief] = None
    created_at: dt.datetime
    updated_at: dt.datetime


# ── Financial movements ──────────────────────────────────────────────────────

class MovementIn(BaseModel):
    direction: str
    category: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    amount: AmountIn
    date: dt.date
    patient_id: Optional[UUID] = None
    appointment_id: Optional[UUID] = None
    payment_method: Optional[str] = None
    receipt: Optional[str] = Field(None, max_length=255)


class MovementUpdate(BaseModel):
    direction: Optional[str] = None
    category: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    amount: Optional[AmountIn] = None
    date: Optional[dt.date] = None
    patient_id: Optional[UUID] = None
    appointment_id: Optional[UUID] = None
    payment_method: Optional[str] = None
    receipt: Optional[str] = Field(None, max_length=255)


class MovementOut(_Out):
    id: UUID
    owner_id: UUID
    direction: str
    category: str
    description: str
    amount: Decimal
    date: dt.date
    patient_id: Optional[UUID] = None
    appointment_id: Optional[UUID] = None
    payment_method: Optional[str] = None
    receipt: Optional[str] = None
    created_at: dt.datetime


class TotalsOut(_Out):
    total_income: Decimal
    total_expenses: Decimal
    balance: Decimal
    count: int


# ── Reports ──────────────────────────────────────────────────────────────────

class ReportOut(_Out):
    id: UUID
    date: dt.date
    owner_id: UUID
    total_patients: int
    total_appointments: int
    completed_appointments: int
    cancelled_appointments: int
    total_income: Decimal
    total_expenses: Decimal
    daily_balance: Decimal
    artifact_location: Optional[str] = None
    sent_to_owner: bool
    sent_at: Optional[dt.datetime] = None
    created_at: dt.datetime
    updated_at: dt.datetime


# ── Dashboard ────────────────────────────────────────────────────────────────

class AlertOut(_Out):
    kind: str
    level: str
    title: str
    message: str
    count: int = 0


# ── Audit ────────────────────────────────────────────────────────────────────

class AuditIn(BaseModel):
    action: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    entity_type: Optional[str] = Field(None, max_length=50)
    entity_id: Optional[str] = Field(None, max_length=64)
    meta: Optional[dict[str, Any]] = None


class AuditOut(_Out):
    id: UUID
    owner_id: UUID
    action: str
    description: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    meta: Optional[dict[str, Any]] = None
    created_at: dt.datetime
