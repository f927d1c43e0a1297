"""
tests/test_jobs.py

Scheduled jobs: triggers, runner lifecycle, the per-owner daily report
batch and artifact cleanup.
"""
from __future__ import annotations

import asyncio
import os
import time as _time
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import select

from conftest import FakeDelivery, auth_headers, make_appointment, make_user
from medcenter.core.rate_limit import CallerRateLimiter
from medcenter.db import session_scope
from medcenter.models import Report
from medcenter.services.jobs import (
    ArtifactCleanupJob,
    DailyReportJob,
    DailyTrigger,
    HourlyTrigger,
    JobRunner,
    RateLimitEvictionJob,
    ReminderCheckJob,
    build_default_runner,
)
from medcenter.services.rendering import ReportRenderer
from medcenter.services.reports import ReportBuilder

TZ = "America/Mexico_City"
# 19:30 local on 2024-06-10
CLOCK_NOW = datetime(2024, 6, 11, 1, 30, tzinfo=timezone.utc)


def _clock():
    return CLOCK_NOW


class FlakyBuilder(ReportBuilder):
    """Raises for one owner, behaves normally for everybody else."""

    def __init__(self, *args, fail_for, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_for = fail_for

    async def generate(self, session, day, owner_id, now=None):
        if owner_id == self.fail_for:
            raise RuntimeError("renderer exploded")
        return await super().generate(session, day, owner_id, now)


class SlowBuilder(ReportBuilder):
    async def generate(self, session, day, owner_id, now=None):
        await asyncio.sleep(5)


async def _reports(session_factory):
    async with session_scope(session_factory) as session:
        return (await session.execute(select(Report).order_by(Report.created_at))).scalars().all()


# ═══════════════════════════════════════════════════════════════════
# 1. TRIGGERS
# ═══════════════════════════════════════════════════════════════════

def test_daily_trigger_later_today():
    trigger = DailyTrigger(18, 0, TZ)
    # 09:00 local
    fire = trigger.next_fire(datetime(2024, 6, 10, 15, 0, tzinfo=timezone.utc))
    assert fire.isoformat() == "2024-06-10T18:00:00-06:00"
    assert trigger.expression == "0 18 * * *"


def test_daily_trigger_rolls_to_tomorrow():
    trigger = DailyTrigger(18, 0, TZ)
    fire = trigger.next_fire(CLOCK_NOW)
    assert fire.isoformat() == "2024-06-11T18:00:00-06:00"


def test_daily_trigger_exact_time_moves_on():
    trigger = DailyTrigger(18, 0, TZ)
    fire = trigger.next_fire(datetime(2024, 6, 11, 0, 0, tzinfo=timezone.utc))
    assert fire.date() == date(2024, 6, 11)


def test_daily_trigger_keeps_wall_clock_across_dst():
    trigger = DailyTrigger(2, 0, "America/New_York")
    fire = trigger.next_fire(datetime(2024, 11, 2, 12, 0, tzinfo=timezone.utc))
    assert (fire.date(), fire.hour) == (date(2024, 11, 3), 2)


def test_hourly_trigger():
    trigger = HourlyTrigger(0, TZ)
    fire = trigger.next_fire(datetime(2024, 6, 10, 15, 20, tzinfo=timezone.utc))
    assert fire.astimezone(timezone.utc) == datetime(2024, 6, 10, 16, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("hour,minute", [(24, 0), (-1, 0), (3, 60)])
def test_daily_trigger_rejects_bad_time(hour, minute):
    with pytest.raises(ValueError):
        DailyTrigger(hour, minute)


# ═══════════════════════════════════════════════════════════════════
# 2. RUNNER
# ═══════════════════════════════════════════════════════════════════

async def test_runner_start_stop_status():
    calls = []

    async def job():
        calls.append(1)

    runner = JobRunner(clock=_clock)
    runner.register("ping", HourlyTrigger(0, TZ), job)

    before = runner.status()["ping"]
    assert before["running"] is False
    assert before["next_run"] is None
    assert before["trigger"] == "0 * * * *"

    runner.start("ping")
    runner.start("ping")
    started = runner.status()["ping"]
    assert started["running"] is True
    assert started["next_run"] == "2024-06-10T20:00:00-06:00"

    await runner.stop_all()
    assert runner.status()["ping"]["running"] is False
    assert calls == []


async def test_register_twice_is_rejected():
    async def job():
        return None

    runner = JobRunner()
    runner.register("a", HourlyTrigger(), job)
    with pytest.raises(ValueError):
        runner.register("a", HourlyTrigger(), job)


async def test_run_now_records_failure_and_keeps_going():
    async def boom():
        raise RuntimeError("nope")

    runner = JobRunner(clock=_clock)
    runner.register("boom", HourlyTrigger(), boom)

    assert await runner.run_now("boom") is None
    status = runner.status()["boom"]
    assert status["last_error"] == "RuntimeError: nope"
    assert status["last_run"] == CLOCK_NOW.isoformat()


async def test_loop_fires_when_due():
    fired = asyncio.Event()

    async def job():
        fired.set()

    # the trigger's next fire time is already in the past for this clock
    class Immediate(HourlyTrigger):
        def next_fire(self, after=None):
            return CLOCK_NOW - timedelta(seconds=1)

    runner = JobRunner(clock=_clock)
    runner.register("now", Immediate(), job)
    runner.start("now")
    try:
        await asyncio.wait_for(fired.wait(), timeout=2)
    finally:
        await runner.stop_all()


# ═══════════════════════════════════════════════════════════════════
# 3. DAILY REPORT BATCH
# ═══════════════════════════════════════════════════════════════════

async def test_daily_report_for_every_active_owner(session_factory, settings, store, user, patient):
    second = await make_user(session_factory, email="second@example.com")
    await make_user(session_factory, email="gone@example.com", active=False)
    await make_appointment(session_factory, user, patient)

    delivery = FakeDelivery()
    builder = ReportBuilder(ReportRenderer(), store, settings)
    job = DailyReportJob(session_factory, builder, delivery, settings, clock=_clock)

    result = await job()

    assert set(result.succeeded) == {user.id, second.id}
    assert result.failed == {}
    assert {(owner, recipients[0]) for owner, _, recipients, _ in delivery.sent} == {
        (user.id, "owner@example.com"),
        (second.id, "second@example.com"),
    }
    assert all(attachment.startswith(b"%PDF") for *_, attachment in delivery.sent)

    reports = await _reports(session_factory)
    assert len(reports) == 2
    assert all(r.date == date(2024, 6, 10) for r in reports)
    assert all(r.sent_to_owner and r.sent_at is not None for r in reports)
    mine = next(r for r in reports if r.owner_id == user.id)
    assert mine.total_appointments == 1


async def test_one_owner_failure_does_not_stop_the_batch(session_factory, settings, store, user):
    second = await make_user(session_factory, email="second@example.com")

    delivery = FakeDelivery()
    builder = FlakyBuilder(ReportRenderer(), store, settings, fail_for=user.id)
    job = DailyReportJob(session_factory, builder, delivery, settings, clock=_clock)

    result = await job()

    assert result.succeeded == [second.id]
    assert result.failed[user.id] == "RuntimeError: renderer exploded"
    reports = await _reports(session_factory)
    assert [r.owner_id for r in reports] == [second.id]


async def test_owner_timeout_is_reported(session_factory, settings, store, user):
    settings.REPORT_OWNER_TIMEOUT_SECONDS = 0.05
    builder = SlowBuilder(ReportRenderer(), store, settings)
    job = DailyReportJob(session_factory, builder, FakeDelivery(), settings, clock=_clock)

    result = await job()

    assert result.failed == {user.id: "timeout"}
    assert await _reports(session_factory) == []


async def test_undelivered_report_stays_unsent(session_factory, settings, store, user):
    delivery = FakeDelivery(fail_for=[user.id])
    builder = ReportBuilder(ReportRenderer(), store, settings)
    job = DailyReportJob(session_factory, builder, delivery, settings, clock=_clock)

    result = await job()

    assert result.succeeded == [user.id]
    (report,) = await _reports(session_factory)
    assert report.sent_to_owner is False
    assert report.sent_at is None


async def test_configured_recipients_override_owner_email(session_factory, settings, store, user):
    settings.REPORT_RECIPIENTS = "boss@example.com, audit@example.com"
    delivery = FakeDelivery()
    builder = ReportBuilder(ReportRenderer(), store, settings)
    job = DailyReportJob(session_factory, builder, delivery, settings, clock=_clock)

    await job()

    assert delivery.sent[0][2] == ["boss@example.com", "audit@example.com"]


# ═══════════════════════════════════════════════════════════════════
# 4. REMINDERS + CLEANUP
# ═══════════════════════════════════════════════════════════════════

async def test_reminder_check_counts_tomorrow(session_factory, settings, user, patient):
    await make_appointment(session_factory, user, patient, day=date(2024, 6, 11))
    await make_appointment(session_factory, user, patient, day=date(2024, 6, 11), start=time(11, 0), end=time(11, 30), status="cancelled")
    await make_appointment(session_factory, user, patient, day=date(2024, 6, 12))

    job = ReminderCheckJob(session_factory, settings, clock=_clock)
    assert await job() == 1


async def test_cleanup_removes_only_old_files(store):
    store.directory.mkdir(parents=True, exist_ok=True)
    old = store.directory / "report_2024-01-01_1.pdf"
    fresh = store.directory / "report_2024-06-10_2.pdf"
    old.write_bytes(b"%PDF old")
    fresh.write_bytes(b"%PDF new")
    stale = _time.time() - 40 * 86400
    os.utime(old, (stale, stale))

    removed = await ArtifactCleanupJob(store, retention_days=30)()

    assert removed == ["report_2024-01-01_1.pdf"]
    assert not old.exists()
    assert fresh.exists()


async def test_rate_limit_eviction_drops_idle_callers():
    limiter = CallerRateLimiter(limit=5)
    await limiter.is_allowed("ip:10.0.0.1")
    await limiter.is_allowed("user:abc")

    assert await RateLimitEvictionJob(limiter, idle_seconds=3600)() == 0
    assert len(limiter) == 2
    assert await RateLimitEvictionJob(limiter, idle_seconds=-1)() == 2
    assert len(limiter) == 0


async def test_default_runner_schedules_eviction(session_factory, settings, store, delivery):
    limiter = CallerRateLimiter(limit=5)
    builder = ReportBuilder(ReportRenderer(), store, settings)
    runner = build_default_runner(settings, session_factory, builder, delivery, limiter=limiter)

    assert runner.status()["rate_limit_eviction"]["trigger"] == HourlyTrigger(30, settings.TIMEZONE).expression
    await limiter.is_allowed("ip:10.0.0.1")
    assert await runner.run_now("rate_limit_eviction") == 0
    assert len(limiter) == 1
    assert "rate_limit_eviction" not in build_default_runner(settings, session_factory, builder, delivery).names


# ═══════════════════════════════════════════════════════════════════
# 5. ADMIN ENDPOINTS
# ═══════════════════════════════════════════════════════════════════

async def test_jobs_endpoints_require_admin(client):
    assert (await client.get("/api/jobs")).status_code == 403
    assert (await client.post("/api/jobs/daily_report/run")).status_code == 403


async def test_admin_can_list_and_run_jobs(client, admin, settings, delivery):
    headers = auth_headers(admin, settings)

    listing = await client.get("/api/jobs", headers=headers)
    assert listing.status_code == 200
    assert set(listing.json()["data"]) == {
        "daily_report", "reminder_check", "artifact_cleanup", "rate_limit_eviction",
    }

    run = await client.post("/api/jobs/daily_report/run", headers=headers)
    assert run.status_code == 200, run.text
    result = run.json()["data"]["result"]
    assert str(admin.id) in result["succeeded"]
    assert result["failed"] == {}
    assert len(delivery.sent) == 2

    missing = await client.post("/api/jobs/nope/run", headers=headers)
    assert missing.status_code == 404
