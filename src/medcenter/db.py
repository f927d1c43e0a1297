from __future__ import annotations

import sys
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings


# ─────────────────────────────────────────
# Windows Event Loop Fix (psycopg3 async)
# ─────────────────────────────────────────

def _fix_windows_event_loop() -> None:
    """
    Psycopg async on Windows is not compatible with ProactorEventLoop.
    Force SelectorEventLoop.
    """
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(
            asyncio.WindowsSelectorEventLoopPolicy()
        )


_fix_windows_event_loop()


# ─────────────────────────────────────────
# Engine & Session Factory
# ─────────────────────────────────────────

settings = get_settings()

engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

SessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """
    Transactional session scope.

    Commits when the block exits normally, rolls back on any exception.
    Background work (jobs, audit) passes its own factory.
    """
    async with (factory or SessionLocal)() as session:
        async with session.begin():
            yield session


# ─────────────────────────────────────────
# LIKE helpers
# ─────────────────────────────────────────

LIKE_ESCAPE = "\\"


def contains_pattern(term: str) -> str:
    """``%term%`` where ``%`` and ``_`` inside ``term`` match literally.

    Pair with ``column.like(pattern, escape=LIKE_ESCAPE)``.
    """
    escaped = (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
    return f"%{escaped}%"
