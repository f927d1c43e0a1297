"""
src/medcenter/core/dates.py

Calendar-date helpers bound to a fixed IANA time zone.

Every date-bucketed query (reports, reminders, dashboard) goes through
this module. Dates travel as ``YYYY-MM-DD`` strings or ``datetime.date``;
instants are always converted through the zone before the date is taken.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from medcenter.core.errors import ValidationFailed

__all__ = [
    "DEFAULT_TZ",
    "get_zone",
    "now_in_zone",
    "to_iso_date",
    "today_iso",
    "yesterday_iso",
    "tomorrow_iso",
    "add_days_iso",
    "parse_iso_date",
    "combine_local",
    "period_bounds",
]

DEFAULT_TZ = "America/Mexico_City"

PERIODS = ("day", "week", "month")


@lru_cache(maxsize=32)
def get_zone(name: str = DEFAULT_TZ) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name}") from exc


def now_in_zone(tz: str = DEFAULT_TZ, now: datetime | None = None) -> datetime:
    """Aware 'now' expressed in ``tz``. ``now`` overrides the clock (tests)."""
    instant = now or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(get_zone(tz))


def to_iso_date(instant: datetime, tz: str = DEFAULT_TZ) -> str:
    """Calendar date of ``instant`` in ``tz``. Naive instants are UTC."""
    return now_in_zone(tz, instant).date().isoformat()


def today_iso(tz: str = DEFAULT_TZ, now: datetime | None = None) -> str:
    return to_iso_date(now or datetime.now(timezone.utc), tz)


def yesterday_iso(tz: str = DEFAULT_TZ, now: datetime | None = None) -> str:
    return add_days_iso(today_iso(tz, now), -1, tz)


def tomorrow_iso(tz: str = DEFAULT_TZ, now: datetime | None = None) -> str:
    return add_days_iso(today_iso(tz, now), 1, tz)


def add_days_iso(iso_date: str | date, days: int, tz: str = DEFAULT_TZ) -> str:
    """Shift a local calendar date by ``days``.

    The date is anchored at local noon in ``tz`` and moved by calendar days,
    then read back through the zone; a DST jump can never change the day.
    """
    base = parse_iso_date(iso_date)
    zone = get_zone(tz)
    anchored = datetime.combine(base, time(12, 0), tzinfo=zone)
    shifted = datetime.combine(anchored.date() + timedelta(days=days), time(12, 0), tzinfo=zone)
    return shifted.date().isoformat()


def parse_iso_date(value: str | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ValidationFailed(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def combine_local(day: str | date, at: time, tz: str = DEFAULT_TZ) -> datetime:
    """Aware datetime for a local wall-clock ``at`` on ``day`` in ``tz``."""
    return datetime.combine(parse_iso_date(day), at.replace(tzinfo=None), tzinfo=get_zone(tz))


def period_bounds(period: str, today: str | date) -> tuple[str, str]:
    """Inclusive ``(start, end)`` ISO dates for day / week / month.

    Weeks run Sunday..Saturday. Unknown periods fall back to ``day``.
    """
    ref = parse_iso_date(today)
    if period == "week":
        # date.weekday(): Monday=0 .. Sunday=6
        start = ref - timedelta(days=(ref.weekday() + 1) % 7)
        end = start + timedelta(days=6)
    elif period == "month":
        start = ref.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        end = next_month - timedelta(days=1)
    else:
        start = end = ref
    return start.isoformat(), end.isoformat()
