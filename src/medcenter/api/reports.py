from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_audit, get_current_user, get_report_builder, get_session
from medcenter.api.schemas import ReportOut, envelope
from medcenter.core.dates import parse_iso_date
from medcenter.models import User
from medcenter.services.audit import AuditRecorder
from medcenter.services.reports import ReportBuilder, delete_report, get_report, list_reports

router = APIRouter(prefix="/reports", tags=["reports"])


@router.post("/generate/{day}")
async def generate_report(
    day: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    builder: ReportBuilder = Depends(get_report_builder),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    generated = await builder.generate(session, parse_iso_date(day), user.id)
    audit.record(
        user.id, "report.generate",
        description=f"Generated report for {generated.day.date.isoformat()}",
        entity_type="report", entity_id=generated.report.id,
        session=session,
    )
    return envelope(ReportOut.model_validate(generated.report).json_dict(), "Report generated")


@router.get("")
async def get_reports(
    start: str | None = None,
    end: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    rows, pagination = await list_reports(session, user.id, start=start, end=end, page=page, limit=limit)
    return envelope({
        "reports": [ReportOut.model_validate(r).json_dict() for r in rows],
        "pagination": pagination,
    })


@router.get("/{report_id}")
async def get_one_report(
    report_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    report = await get_report(session, user.id, report_id)
    return envelope(ReportOut.model_validate(report).json_dict())


@router.get("/{report_id}/pdf")
async def download_report_pdf(
    report_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    builder: ReportBuilder = Depends(get_report_builder),
) -> Response:
    report = await get_report(session, user.id, report_id)
    pdf = await builder.artifact_for(session, report)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="report_{report.date.isoformat()}.pdf"'},
    )


@router.delete("/{report_id}")
async def remove_report(
    report_id: UUID,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    builder: ReportBuilder = Depends(get_report_builder),
    audit: AuditRecorder = Depends(get_audit),
) -> dict[str, Any]:
    await delete_report(session, user.id, report_id, builder.store)
    audit.record(user.id, "report.delete", entity_type="report", entity_id=report_id, session=session)
    return envelope(None, "Report deleted")
