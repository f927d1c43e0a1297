"""
Dashboard aggregation.

Everything here is recomputed on every call from live queries; alerts are
advisory and never stored.
"""
from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.core.dates import (
    DEFAULT_TZ,
    PERIODS,
    add_days_iso,
    combine_local,
    now_in_zone,
    parse_iso_date,
    period_bounds,
)
from medcenter.models import Appointment, AppointmentStatus, Patient
from medcenter.services.finance import (
    FinancialTotals,
    movements_between,
    movements_for_date,
    recent_movements,
    summarize,
)

UPCOMING_DAYS = 7
UPCOMING_LIMIT = 10
RECENT_MOVEMENTS = 5
ALERT_WINDOW = timedelta(hours=2)

_PENDING = frozenset({AppointmentStatus.SCHEDULED.value, AppointmentStatus.IN_PROGRESS.value})


@dataclass
class Alert:
    kind: str
    level: str
    title: str
    message: str
    items: list[Any] = field(default_factory=list)


@dataclass
class DashboardSummary:
    date: str
    total_patients: int
    today_counts: dict[str, int]
    today_totals: FinancialTotals
    week_appointments: int
    week_balance: Any
    today_appointments: list[Appointment]
    upcoming_appointments: list[Appointment]
    recent_movements: list[Any]
    alerts: list[Alert]


def status_counts(appointments: Iterable[Appointment]) -> dict[str, int]:
    counter = Counter(a.status for a in appointments)
    counts = {s.value: counter.get(s.value, 0) for s in AppointmentStatus}
    counts["total"] = sum(counter.values())
    return counts


def derive_alerts(
    now: datetime,
    today_appointments: Sequence[Appointment],
    upcoming_appointments: Sequence[Appointment],
    today_totals: FinancialTotals,
    tz: str = DEFAULT_TZ,
    currency: str = "Q",
) -> list[Alert]:
    """Pure: the same inputs always yield the same alerts."""
    alerts: list[Alert] = []
    horizon = now + ALERT_WINDOW

    soon = [
        a for a in upcoming_appointments
        if a.status != AppointmentStatus.CANCELLED
        and now <= combine_local(a.date, a.start_time, tz) <= horizon
    ]
    if soon:
        alerts.append(Alert(
            kind="upcoming",
            level="info",
            title="Upcoming appointments",
            message=f"{len(soon)} appointment(s) in the next 2 hours",
            items=soon,
        ))

    pending = [a for a in today_appointments if a.status in _PENDING]
    if pending:
        alerts.append(Alert(
            kind="pending",
            level="warning",
            title="Pending appointments",
            message=f"{len(pending)} appointment(s) still pending today",
            items=pending,
        ))

    if today_totals.balance < 0:
        alerts.append(Alert(
            kind="negative_balance",
            level="error",
            title="Negative balance",
            message=f"Today's balance is negative: {currency}{today_totals.balance:.2f}",
        ))
    return alerts


async def _appointments_between(
    session: AsyncSession,
    owner_id: UUID,
    start: str,
    end: str,
    *,
    exclude_cancelled: bool = False,
) -> list[Appointment]:
    stmt = (
        select(Appointment)
        .where(
            Appointment.owner_id == owner_id,
            Appointment.date >= parse_iso_date(start),
            Appointment.date <= parse_iso_date(end),
        )
        .order_by(Appointment.date.asc(), Appointment.start_time.asc())
    )
    if exclude_cancelled:
        stmt = stmt.where(Appointment.status != AppointmentStatus.CANCELLED.value)
    return list((await session.execute(stmt)).scalars().all())


async def build_summary(
    session: AsyncSession,
    owner_id: UUID,
    now: datetime | None = None,
    tz: str = DEFAULT_TZ,
    currency: str = "Q",
) -> DashboardSummary:
    local_now = now_in_zone(tz, now)
    today = local_now.date().isoformat()

    total_patients = (
        await session.execute(select(func.count(Patient.id)).where(Patient.is_active.is_(True)))
    ).scalar_one()

    today_appts = await _appointments_between(session, owner_id, today, today)
    today_totals = summarize(await movements_for_date(session, owner_id, today))

    upcoming = await _appointments_between(
        session, owner_id, today, add_days_iso(today, UPCOMING_DAYS, tz), exclude_cancelled=True
    )
    recent = await recent_movements(session, owner_id, RECENT_MOVEMENTS)

    week_start, week_end = period_bounds("week", today)
    week_count = len(await _appointments_between(session, owner_id, week_start, week_end))
    week_totals = summarize(await movements_between(session, owner_id, week_start, week_end))

    return DashboardSummary(
        date=today,
        total_patients=int(total_patients),
        today_counts=status_counts(today_appts),
        today_totals=today_totals,
        week_appointments=week_count,
        week_balance=week_totals.balance,
        today_appointments=today_appts,
        upcoming_appointments=upcoming[:UPCOMING_LIMIT],
        recent_movements=recent,
        alerts=derive_alerts(local_now, today_appts, upcoming, today_totals, tz, currency),
    )


async def period_stats(
    session: AsyncSession,
    owner_id: UUID,
    period: str,
    today: str,
) -> dict[str, Any]:
    if period not in PERIODS:
        period = "day"
    start, end = period_bounds(period, today)
    appointments = await _appointments_between(session, owner_id, start, end)
    totals = summarize(await movements_between(session, owner_id, start, end))
    return {
        "period": period,
        "start": start,
        "end": end,
        "appointments": status_counts(appointments),
        **totals.as_dict(),
    }
