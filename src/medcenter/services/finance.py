"""
Financial movements and their aggregation.

Amounts are ``Decimal`` end to end. A movement's direction carries the
sign; stored amounts are always positive. Summation never falls back to
zero for an unreadable amount: ``MalformedAmount`` is raised instead.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.core.dates import parse_iso_date
from medcenter.core.errors import NotFound, ValidationFailed
from medcenter.db import LIKE_ESCAPE, contains_pattern
from medcenter.models import FinancialMovement, MovementDirection, PaymentMethod
from medcenter.services.audit import AuditRecorder

_log = logging.getLogger("medcenter.finance")

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

_UPDATABLE = frozenset({
    "direction", "category", "description", "amount", "date",
    "patient_id", "appointment_id", "payment_method", "receipt",
})


class MalformedAmount(ValidationFailed):
    default_code = "MALFORMED_AMOUNT"


def to_amount(value: Any) -> Decimal:
    """Strict conversion of a submitted or stored amount to cents.

    The positive check runs on the rounded value, so anything below half a
    cent is rejected rather than stored as 0.00.
    """
    if isinstance(value, bool) or value is None:
        raise MalformedAmount(f"Invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        if not amount.is_finite():
            raise MalformedAmount(f"Invalid amount: {value!r}")
        amount = amount.quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise MalformedAmount(f"Invalid amount: {value!r}") from exc
    if amount <= 0:
        raise MalformedAmount("Amount must be greater than zero")
    return amount


@dataclass(frozen=True)
class FinancialTotals:
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    balance: Decimal = ZERO
    count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_income": self.total_income,
            "total_expenses": self.total_expenses,
            "balance": self.balance,
            "count": self.count,
        }


def summarize(movements: Iterable[Any]) -> FinancialTotals:
    """Totals for any movement set; items need ``direction`` and ``amount``."""
    income = ZERO
    expenses = ZERO
    count = 0
    for m in movements:
        amount = to_amount(m.amount)
        if m.direction == MovementDirection.INCOME:
            income += amount
        elif m.direction == MovementDirection.EXPENSE:
            expenses += amount
        else:
            raise ValidationFailed(f"Unknown movement direction '{m.direction}'")
        count += 1
    return FinancialTotals(
        total_income=income.quantize(CENTS),
        total_expenses=expenses.quantize(CENTS),
        balance=(income - expenses).quantize(CENTS),
        count=count,
    )


# ── Queries ──────────────────────────────────────────────────────────────────

async def movements_for_date(session: AsyncSession, owner_id: UUID, day: date | str) -> list[FinancialMovement]:
    rows = (
        await session.execute(
            select(FinancialMovement)
            .where(FinancialMovement.owner_id == owner_id, FinancialMovement.date == parse_iso_date(day))
            .order_by(FinancialMovement.created_at.asc())
        )
    ).scalars().all()
    return list(rows)


async def movements_between(
    session: AsyncSession,
    owner_id: UUID,
    start: date | str | None = None,
    end: date | str | None = None,
    *,
    direction: str | None = None,
    category: str | None = None,
) -> list[FinancialMovement]:
    conditions = [FinancialMovement.owner_id == owner_id]
    if start:
        conditions.append(FinancialMovement.date >= parse_iso_date(start))
    if end:
        conditions.append(FinancialMovement.date <= parse_iso_date(end))
    if direction:
        conditions.append(FinancialMovement.direction == direction)
    if category:
        conditions.append(FinancialMovement.category.like(contains_pattern(category), escape=LIKE_ESCAPE))
    rows = (
        await session.execute(
            select(FinancialMovement)
            .where(*conditions)
            .order_by(FinancialMovement.date.desc(), FinancialMovement.created_at.desc())
        )
    ).scalars().all()
    return list(rows)


async def recent_movements(session: AsyncSession, owner_id: UUID, limit: int = 5) -> list[FinancialMovement]:
    rows = (
        await session.execute(
            select(FinancialMovement)
            .where(FinancialMovement.owner_id == owner_id)
            .order_by(FinancialMovement.created_at.desc())
            .limit(limit)
        )
    ).scalars().all()
    return list(rows)


# ── Service ──────────────────────────────────────────────────────────────────

def _check_direction(value: Any) -> str:
    if value not in MovementDirection.__members__.values():
        raise ValidationFailed("direction must be 'income' or 'expense'")
    return str(value)


def _check_payment_method(value: Any) -> str | None:
    if value is None:
        return None
    if value not in PaymentMethod.__members__.values():
        valid = ", ".join(p.value for p in PaymentMethod)
        raise ValidationFailed(f"Invalid payment method. Valid methods: {valid}")
    return str(value)


class MovementService:
    def __init__(self, session: AsyncSession, audit: AuditRecorder | None = None) -> None:
        self.session = session
        self.audit = audit

    def _audit(self, owner_id: UUID, action: str, movement: FinancialMovement) -> None:
        if self.audit is not None:
            self.audit.record(
                owner_id, action,
                description=f"{movement.direction} {movement.amount} ({movement.category})",
                entity_type="movement", entity_id=movement.id,
                session=self.session,
                meta={"date": movement.date.isoformat()},
            )

    async def create(self, owner_id: UUID, data: dict[str, Any]) -> FinancialMovement:
        category = (data.get("category") or "").strip()
        description = (data.get("description") or "").strip()
        if not category or not description:
            raise ValidationFailed("category and description are required")
        if not data.get("date"):
            raise ValidationFailed("date is required")

        movement = FinancialMovement(
            owner_id=owner_id,
            direction=_check_direction(data.get("direction")),
            category=category,
            description=description,
            amount=to_amount(data.get("amount")),
            date=parse_iso_date(data["date"]),
            patient_id=data.get("patient_id"),
            appointment_id=data.get("appointment_id"),
            payment_method=_check_payment_method(data.get("payment_method")),
            receipt=data.get("receipt"),
        )
        self.session.add(movement)
        await self.session.flush()
        self._audit(owner_id, "movement.create", movement)
        return movement

    async def get(self, owner_id: UUID, movement_id: UUID) -> FinancialMovement:
        movement = (
            await self.session.execute(
                select(FinancialMovement).where(
                    FinancialMovement.id == movement_id,
                    FinancialMovement.owner_id == owner_id,
                )
            )
        ).scalars().first()
        if movement is None:
            raise NotFound("Financial movement not found")
        return movement

    async def list(
        self,
        owner_id: UUID,
        *,
        day: date | str | None = None,
        direction: str | None = None,
        category: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[FinancialMovement], dict[str, int]]:
        conditions = [FinancialMovement.owner_id == owner_id]
        if day:
            conditions.append(FinancialMovement.date == parse_iso_date(day))
        if direction:
            conditions.append(FinancialMovement.direction == direction)
        if category:
            conditions.append(FinancialMovement.category.like(contains_pattern(category), escape=LIKE_ESCAPE))

        total = (
            await self.session.execute(select(func.count(FinancialMovement.id)).where(*conditions))
        ).scalar_one()
        rows = (
            await self.session.execute(
                select(FinancialMovement)
                .where(*conditions)
                .order_by(FinancialMovement.date.desc(), FinancialMovement.created_at.desc())
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

    async def update(self, owner_id: UUID, movement_id: UUID, patch: dict[str, Any]) -> FinancialMovement:
        unknown = set(patch) - _UPDATABLE
        if unknown:
            raise ValidationFailed(f"Fields not updatable: {', '.join(sorted(unknown))}")
        movement = await self.get(owner_id, movement_id)

        if "direction" in patch:
            patch["direction"] = _check_direction(patch["direction"])
        if "amount" in patch:
            patch["amount"] = to_amount(patch["amount"])
        if "date" in patch:
            patch["date"] = parse_iso_date(patch["date"])
        if "payment_method" in patch:
            patch["payment_method"] = _check_payment_method(patch["payment_method"])
        for field in ("category", "description"):
            if field in patch:
                patch[field] = (patch[field] or "").strip()
                if not patch[field]:
                    raise ValidationFailed(f"{field} cannot be empty")

        for field, value in patch.items():
            setattr(movement, field, value)
        await self.session.flush()
        self._audit(owner_id, "movement.update", movement)
        return movement

    async def delete(self, owner_id: UUID, movement_id: UUID) -> None:
        movement = await self.get(owner_id, movement_id)
        await self.session.delete(movement)
        await self.session.flush()
        self._audit(owner_id, "movement.delete", movement)

    async def balance_for_date(
        self, owner_id: UUID, day: date | str
    ) -> tuple[FinancialTotals, list[FinancialMovement]]:
        movements = await movements_for_date(self.session, owner_id, day)
        return summarize(movements), movements

    async def history(
        self,
        owner_id: UUID,
        start: date | str | None = None,
        end: date | str | None = None,
        *,
        direction: str | None = None,
        category: str | None = None,
    ) -> tuple[FinancialTotals, list[FinancialMovement]]:
        if start and end and parse_iso_date(start) > parse_iso_date(end):
            raise ValidationFailed("start date must not be after end date")
        movements = await movements_between(
            self.session, owner_id, start, end, direction=direction, category=category
        )
        return summarize(movements), movements
