"""
Daily report pipeline.

``ReportBuilder.generate`` recomputes one ``(date, owner)`` snapshot,
upserts the Report row, renders the PDF and stores it. Every write goes
through the caller's session, so a rendering or storage failure rolls the
stats update back with it.
"""
from __future__ import annotations

import logging
import math
import time as _time
from dataclasses import dataclass, field
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.config import Settings
from medcenter.core.dates import parse_iso_date
from medcenter.core.errors import NotFound
from medcenter.models import Appointment, AppointmentStatus, FinancialMovement, Report
from medcenter.services.finance import FinancialTotals, movements_for_date, summarize
from medcenter.services.rendering import ReportDocument, ReportRenderer, ReportTable
from medcenter.services.storage import ArtifactStore

_log = logging.getLogger("medcenter.reports")


@dataclass
class DayData:
    date: date
    owner_id: UUID
    total_patients: int = 0
    total_appointments: int = 0
    completed_appointments: int = 0
    cancelled_appointments: int = 0
    totals: FinancialTotals = field(default_factory=FinancialTotals)
    appointments: list[Appointment] = field(default_factory=list)
    movements: list[FinancialMovement] = field(default_factory=list)


@dataclass
class GeneratedReport:
    report: Report
    day: DayData
    artifact: bytes
    filename: str


async def collect_day_data(session: AsyncSession, day: date | str, owner_id: UUID) -> DayData:
    target = parse_iso_date(day)
    appointments = list(
        (
            await session.execute(
                select(Appointment)
                .where(Appointment.owner_id == owner_id, Appointment.date == target)
                .order_by(Appointment.start_time.asc())
            )
        ).scalars().all()
    )
    movements = await movements_for_date(session, owner_id, target)

    return DayData(
        date=target,
        owner_id=owner_id,
        total_patients=len({a.patient_id for a in appointments}),
        total_appointments=len(appointments),
        completed_appointments=sum(1 for a in appointments if a.status == AppointmentStatus.COMPLETED),
        cancelled_appointments=sum(1 for a in appointments if a.status == AppointmentStatus.CANCELLED),
        totals=summarize(movements),
        appointments=appointments,
        movements=movements,
    )


def _money(currency: str, value: Any) -> str:
    return f"{currency} {value:.2f}"


def build_document(day: DayData, center_name: str, currency: str = "Q") -> ReportDocument:
    appointment_rows = [
        [
            f"{a.start_time.strftime('%H:%M')}-{a.end_time.strftime('%H:%M')}",
            a.patient.full_name if a.patient is not None else "",
            a.title,
            a.category.replace("_", " "),
            a.status.replace("_", " "),
        ]
        for a in day.appointments
    ]
    movement_rows = [
        [
            m.direction,
            m.category,
            m.description,
            m.payment_method or "-",
            _money(currency, m.amount),
        ]
        for m in day.movements
    ]
    return ReportDocument(
        title=center_name,
        subtitle=f"Daily report - {day.date.isoformat()}",
        metrics=[
            ("Patients seen", str(day.total_patients)),
            ("Appointments", str(day.total_appointments)),
            ("Completed", str(day.completed_appointments)),
            ("Cancelled", str(day.cancelled_appointments)),
            ("Income", _money(currency, day.totals.total_income)),
            ("Expenses", _money(currency, day.totals.total_expenses)),
            ("Daily balance", _money(currency, day.totals.balance)),
        ],
        tables=[
            ReportTable("Appointments", ["Time", "Patient", "Title", "Category", "Status"], appointment_rows),
            ReportTable("Financial movements", ["Type", "Category", "Description", "Method", "Amount"], movement_rows),
        ],
        footer=f"{center_name} - generated automatically",
    )


def artifact_name(day: date, now: float | None = None) -> str:
    millis = int((now if now is not None else _time.time()) * 1000)
    return f"report_{day.isoformat()}_{millis}.pdf"


class ReportBuilder:
    def __init__(self, renderer: ReportRenderer, store: ArtifactStore, settings: Settings) -> None:
        self.renderer = renderer
        self.store = store
        self.settings = settings

    async def _upsert(self, session: AsyncSession, day: DayData) -> Report:
        report = (
            await session.execute(
                select(Report).where(Report.date == day.date, Report.owner_id == day.owner_id)
            )
        ).scalars().first()
        if report is None:
            report = Report(date=day.date, owner_id=day.owner_id)
            session.add(report)

        report.total_patients = day.total_patients
        report.total_appointments = day.total_appointments
        report.completed_appointments = day.completed_appointments
        report.cancelled_appointments = day.cancelled_appointments
        report.total_income = day.totals.total_income
        report.total_expenses = day.totals.total_expenses
        report.daily_balance = day.totals.balance
        await session.flush()
        return report

    async def render(self, day: DayData) -> bytes:
        document = build_document(day, self.settings.CENTER_NAME, self.settings.CURRENCY_SYMBOL)
        return await self.renderer.render(document)

    async def generate(
        self,
        session: AsyncSession,
        day: date | str,
        owner_id: UUID,
        now: float | None = None,
    ) -> GeneratedReport:
        data = await collect_day_data(session, day, owner_id)
        report = await self._upsert(session, data)

        pdf = await self.render(data)
        filename = artifact_name(data.date, now)
        previous = report.artifact_location
        report.artifact_location = await self.store.store(pdf, filename)
        await session.flush()
        if previous and previous != report.artifact_location:
            await self.store.delete(previous)

        _log.info(
            "report generated owner=%s date=%s appointments=%d balance=%s",
            owner_id, data.date, data.total_appointments, data.totals.balance,
        )
        return GeneratedReport(report=report, day=data, artifact=pdf, filename=filename)

    async def render_existing(self, session: AsyncSession, report: Report) -> bytes:
        """PDF for a stored report whose artifact is gone; nothing is written."""
        data = await collect_day_data(session, report.date, report.owner_id)
        return await self.render(data)

    async def artifact_for(self, session: AsyncSession, report: Report) -> bytes:
        if report.artifact_location:
            stored = await self.store.load(report.artifact_location)
            if stored is not None:
                return stored
            _log.warning("artifact missing for report %s, re-rendering", report.id)
        return await self.render_existing(session, report)


async def list_reports(
    session: AsyncSession,
    owner_id: UUID,
    *,
    start: date | str | None = None,
    end: date | str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Report], dict[str, int]]:
    conditions = [Report.owner_id == owner_id]
    if start:
        conditions.append(Report.date >= parse_iso_date(start))
    if end:
        conditions.append(Report.date <= parse_iso_date(end))

    total = (await session.execute(select(func.count(Report.id)).where(*conditions))).scalar_one()
    rows = (
        await session.execute(
            select(Report)
            .where(*conditions)
            .order_by(Report.date.desc())
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


async def get_report(session: AsyncSession, owner_id: UUID, report_id: UUID) -> Report:
    report = (
        await session.execute(select(Report).where(Report.id == report_id, Report.owner_id == owner_id))
    ).scalars().first()
    if report is None:
        raise NotFound("Report not found")
    return report


async def delete_report(session: AsyncSession, owner_id: UUID, report_id: UUID, store: ArtifactStore) -> None:
    report = await get_report(session, owner_id, report_id)
    location = report.artifact_location
    await session.delete(report)
    await session.flush()
    if location:
        await store.delete(location)
