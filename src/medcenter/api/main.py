# src/medcenter/api/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medcenter.api import appointments, audit, auth, dashboard, jobs, movements, patients, reports
from medcenter.config import Settings, get_settings
from medcenter.core.error_handlers import register_error_handlers
from medcenter.core.health import router as health_router
from medcenter.core.logging import setup_json_logging
from medcenter.core.middleware import RequestIDMiddleware
from medcenter.core.rate_limit import CallerRateLimiter, RateLimitMiddleware
from medcenter.db import SessionLocal
from medcenter.services.audit import AuditRecorder
from medcenter.services.delivery import EmailDelivery
from medcenter.services.jobs import JobRunner, build_default_runner
from medcenter.services.rendering import ReportRenderer
from medcenter.services.reports import ReportBuilder
from medcenter.services.storage import ArtifactStore, build_artifact_store

APP_VERSION = "1.0.0"

log = logging.getLogger("medcenter.api")


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    store: ArtifactStore | None = None,
    delivery: EmailDelivery | None = None,
    runner: JobRunner | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal

    setup_json_logging(settings.LOG_LEVEL, settings.LOG_FILE or None)

    builder = ReportBuilder(ReportRenderer(), store or build_artifact_store(settings), settings)
    delivery = delivery or EmailDelivery(settings)
    limiter = CallerRateLimiter(settings.RATE_LIMIT_PER_MINUTE)
    runner = runner or build_default_runner(settings, session_factory, builder, delivery, limiter=limiter)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.SCHEDULER_ENABLED:
            runner.start_all()
            log.info("scheduler started: %s", ", ".join(runner.names))
        try:
            yield
        finally:
            await runner.stop_all()
            await app.state.audit.drain()

    app = FastAPI(title=settings.APP_NAME, version=APP_VERSION, lifespan=lifespan)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.audit = AuditRecorder(session_factory)
    app.state.report_builder = builder
    app.state.delivery = delivery
    app.state.job_runner = runner
    app.state.rate_limiter = limiter

    # last added runs first: request id must exist before the limiter answers
    app.add_middleware(RateLimitMiddleware, limiter=limiter, settings=settings)
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app, production=settings.is_production)

    app.include_router(health_router)
    for module in (auth, patients, appointments, movements, reports, dashboard, audit, jobs):
        app.include_router(module.router, prefix="/api")

    @app.get("/")
    async def root():
        return {"status": "ok", "service": settings.APP_NAME, "version": APP_VERSION}

    return app
