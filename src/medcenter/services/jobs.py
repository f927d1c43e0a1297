"""
Scheduled background jobs.

``JobRunner`` owns its registry; nothing here is module-level state, so
tests can build as many isolated runners as they like. Each started job
is one ``asyncio.Task`` that sleeps until its trigger's next fire time,
runs, and repeats. A job failure is logged and the loop keeps going.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medcenter.config import Settings
from medcenter.core.dates import DEFAULT_TZ, get_zone, now_in_zone, today_iso, tomorrow_iso
from medcenter.core.logging import owner_id_ctx
from medcenter.core.rate_limit import CallerRateLimiter
from medcenter.db import session_scope
from medcenter.models import Report, User
from medcenter.services.delivery import EmailDelivery
from medcenter.services.reports import ReportBuilder
from medcenter.services.scheduling import pending_reminders
from medcenter.services.storage import LocalArtifactStore

_log = logging.getLogger("medcenter.jobs")

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Triggers ─────────────────────────────────────────────────────────────────

class DailyTrigger:
    """Fires once a day at ``hour:minute`` local time in ``tz``."""

    def __init__(self, hour: int, minute: int = 0, tz: str = DEFAULT_TZ) -> None:
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"invalid time {hour}:{minute}")
        self.hour = hour
        self.minute = minute
        self.tz = tz

    @property
    def expression(self) -> str:
        return f"{self.minute} {self.hour} * * *"

    def next_fire(self, after: datetime | None = None) -> datetime:
        local = now_in_zone(self.tz, after)
        candidate = local.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= local:
            # move by calendar day, then re-attach the wall-clock time
            next_day = local.date() + timedelta(days=1)
            candidate = datetime(
                next_day.year, next_day.month, next_day.day,
                self.hour, self.minute, tzinfo=get_zone(self.tz),
            )
        return candidate


class HourlyTrigger:
    """Fires every hour at ``minute`` past."""

    def __init__(self, minute: int = 0, tz: str = DEFAULT_TZ) -> None:
        if not 0 <= minute < 60:
            raise ValueError(f"invalid minute {minute}")
        self.minute = minute
        self.tz = tz

    @property
    def expression(self) -> str:
        return f"{self.minute} * * * *"

    def next_fire(self, after: datetime | None = None) -> datetime:
        local = now_in_zone(self.tz, after)
        candidate = local.replace(minute=self.minute, second=0, microsecond=0)
        if candidate <= local:
            candidate = (candidate.astimezone(timezone.utc) + timedelta(hours=1)).astimezone(get_zone(self.tz))
        return candidate


# ── Runner ───────────────────────────────────────────────────────────────────

@dataclass
class ScheduledJob:
    name: str
    trigger: DailyTrigger | HourlyTrigger
    func: Callable[[], Awaitable[Any]]
    task: asyncio.Task | None = None
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_error: str | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class JobRunner:
    def __init__(self, clock: Clock | None = None) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._clock = clock or _utc_now

    def register(self, name: str, trigger: DailyTrigger | HourlyTrigger, func: Callable[[], Awaitable[Any]]) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"job '{name}' already registered")
        job = ScheduledJob(name=name, trigger=trigger, func=func)
        self._jobs[name] = job
        return job

    def _get(self, name: str) -> ScheduledJob:
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"unknown job '{name}'") from None

    @property
    def names(self) -> list[str]:
        return list(self._jobs)

    async def _execute(self, job: ScheduledJob) -> Any:
        job.last_run = self._clock()
        _log.info("job %s started", job.name)
        try:
            result = await job.func()
        except Exception as exc:
            job.last_error = f"{type(exc).__name__}: {exc}"
            _log.exception("job %s failed", job.name)
            return None
        job.last_error = None
        _log.info("job %s finished", job.name)
        return result

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            now = self._clock()
            job.next_run = job.trigger.next_fire(now)
            await asyncio.sleep(max((job.next_run - now).total_seconds(), 0.0))
            await self._execute(job)

    def start(self, name: str) -> None:
        job = self._get(name)
        if job.running:
            return
        job.next_run = job.trigger.next_fire(self._clock())
        job.task = asyncio.create_task(self._loop(job), name=f"job:{name}")
        _log.info("job %s scheduled (%s %s)", name, job.trigger.expression, job.trigger.tz)

    async def stop(self, name: str) -> None:
        job = self._get(name)
        task, job.task = job.task, None
        job.next_run = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        _log.info("job %s stopped", name)

    def start_all(self) -> None:
        for name in self._jobs:
            self.start(name)

    async def stop_all(self) -> None:
        for name in list(self._jobs):
            await self.stop(name)

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            name: {
                "running": job.running,
                "next_run": job.next_run.isoformat() if job.running and job.next_run else None,
                "trigger": job.trigger.expression,
                "timezone": job.trigger.tz,
                "last_run": job.last_run.isoformat() if job.last_run else None,
                "last_error": job.last_error,
            }
            for name, job in self._jobs.items()
        }

    async def run_now(self, name: str) -> Any:
        return await self._execute(self._get(name))


# ── Jobs ─────────────────────────────────────────────────────────────────────

@dataclass
class BatchResult:
    succeeded: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "succeeded": [str(u) for u in self.succeeded],
            "failed": {str(k): v for k, v in self.failed.items()},
        }


class DailyReportJob:
    """Generate, deliver and mark today's report for every active user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        builder: ReportBuilder,
        delivery: EmailDelivery,
        settings: Settings,
        clock: Clock | None = None,
    ) -> None:
        self.factory = session_factory
        self.builder = builder
        self.delivery = delivery
        self.settings = settings
        self._clock = clock or _utc_now

    async def _owners(self) -> list[tuple[UUID, str]]:
        async with session_scope(self.factory) as session:
            rows = (
                await session.execute(
                    select(User.id, User.email).where(User.is_active.is_(True)).order_by(User.created_at)
                )
            ).all()
        return [(r.id, r.email) for r in rows]

    async def run_for_owner(self, owner_id: UUID, email: str) -> bool:
        """Returns True when the report was delivered and marked sent."""
        day = today_iso(self.settings.TIMEZONE, self._clock())
        async with session_scope(self.factory) as session:
            generated = await self.builder.generate(session, day, owner_id)

        recipients = self.settings.report_recipients or [email]
        receipt = await self.delivery.send(
            generated.report, generated.day, recipients, generated.artifact, generated.filename
        )
        if not receipt.delivered:
            _log.warning("report %s for owner %s not delivered: %s", day, owner_id, receipt.detail)
            return False

        async with session_scope(self.factory) as session:
            await session.execute(
                update(Report)
                .where(Report.id == generated.report.id)
                .values(sent_to_owner=True, sent_at=self._clock())
            )
        return True

    async def __call__(self) -> BatchResult:
        result = BatchResult()
        owners = await self._owners()
        _log.info("daily report run for %d owner(s)", len(owners))

        for owner_id, email in owners:
            token = owner_id_ctx.set(str(owner_id))
            try:
                await asyncio.wait_for(
                    self.run_for_owner(owner_id, email),
                    timeout=self.settings.REPORT_OWNER_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                result.failed[owner_id] = "timeout"
                _log.error("daily report for owner %s timed out", owner_id)
            except Exception as exc:
                result.failed[owner_id] = f"{type(exc).__name__}: {exc}"
                _log.exception("daily report for owner %s failed", owner_id)
            else:
                result.succeeded.append(owner_id)
            finally:
                owner_id_ctx.reset(token)

        _log.info(
            "daily report run done: %d ok, %d failed",
            len(result.succeeded), len(result.failed),
        )
        return result


class ReminderCheckJob:
    """Lists tomorrow's appointments that still need a reminder."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Clock | None = None,
    ) -> None:
        self.factory = session_factory
        self.settings = settings
        self._clock = clock or _utc_now

    async def __call__(self) -> int:
        day = tomorrow_iso(self.settings.TIMEZONE, self._clock())
        async with session_scope(self.factory) as session:
            pending = await pending_reminders(session, day)
        for appt in pending:
            _log.info(
                "reminder pending: appointment=%s owner=%s %s %s",
                appt.id, appt.owner_id, appt.date, appt.start_time,
            )
        return len(pending)


class ArtifactCleanupJob:
    def __init__(self, store: LocalArtifactStore, retention_days: int = 30) -> None:
        self.store = store
        self.retention_days = retention_days

    async def __call__(self) -> list[str]:
        removed = await asyncio.to_thread(self.store.purge_older_than, self.retention_days)
        _log.info("artifact cleanup removed %d file(s) from %s", len(removed), self.store.directory)
        return removed


class RateLimitEvictionJob:
    """Drops rate-limit buckets of callers idle for ``idle_seconds``."""

    def __init__(self, limiter: CallerRateLimiter, idle_seconds: float = 300.0) -> None:
        self.limiter = limiter
        self.idle_seconds = idle_seconds

    async def __call__(self) -> int:
        removed = await self.limiter.evict_inactive(self.idle_seconds)
        _log.info("rate limiter evicted %d idle caller(s)", removed)
        return removed


def build_default_runner(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    builder: ReportBuilder,
    delivery: EmailDelivery,
    clock: Clock | None = None,
    limiter: CallerRateLimiter | None = None,
) -> JobRunner:
    tz = settings.TIMEZONE
    runner = JobRunner(clock=clock)
    runner.register(
        "daily_report",
        DailyTrigger(settings.REPORT_HOUR, settings.REPORT_MINUTE, tz),
        DailyReportJob(session_factory, builder, delivery, settings, clock),
    )
    runner.register(
        "reminder_check",
        HourlyTrigger(0, tz),
        ReminderCheckJob(session_factory, settings, clock),
    )
    runner.register(
        "artifact_cleanup",
        DailyTrigger(settings.CLEANUP_HOUR, settings.CLEANUP_MINUTE, tz),
        ArtifactCleanupJob(LocalArtifactStore(settings.REPORTS_DIR), settings.REPORT_RETENTION_DAYS),
    )
    if limiter is not None:
        runner.register("rate_limit_eviction", HourlyTrigger(30, tz), RateLimitEvictionJob(limiter))
    return runner
