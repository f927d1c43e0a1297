from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from medcenter.api.deps import get_app_settings, get_current_user, get_session
from medcenter.api.schemas import AlertOut, AppointmentOut, MovementOut, TotalsOut, envelope
from medcenter.config import Settings
from medcenter.core.dates import today_iso
from medcenter.models import User
from medcenter.services.dashboard import build_summary, period_stats

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/summary")
async def dashboard_summary(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    summary = await build_summary(session, user.id, tz=settings.TIMEZONE, currency=settings.CURRENCY_SYMBOL)
    return envelope({
        "date": summary.date,
        "summary": {
            "total_patients": summary.total_patients,
            "today": summary.today_counts,
            **TotalsOut.model_validate(summary.today_totals).json_dict(),
            "week_appointments": summary.week_appointments,
            "week_balance": str(summary.week_balance),
        },
        "today_appointments": [AppointmentOut.model_validate(a).json_dict() for a in summary.today_appointments],
        "upcoming_appointments": [AppointmentOut.model_validate(a).json_dict() for a in summary.upcoming_appointments],
        "recent_movements": [MovementOut.model_validate(m).json_dict() for m in summary.recent_movements],
        "alerts": [
            AlertOut(kind=a.kind, level=a.level, title=a.title, message=a.message, count=len(a.items)).json_dict()
            for a in summary.alerts
        ],
    })


@router.get("/stats")
async def dashboard_stats(
    period: str = "day",
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    stats = await period_stats(session, user.id, period, today_iso(settings.TIMEZONE))
    for key in ("total_income", "total_expenses", "balance"):
        stats[key] = str(stats[key])
    return envelope(stats)
