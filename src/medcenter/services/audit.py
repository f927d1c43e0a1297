"""
Append-only audit trail.

``AuditRecorder.record`` never blocks the caller and never raises: the
insert runs as a background task in its own session, and any failure is
logged and discarded there. Entries recorded against a session are held
until that session commits and dropped if it rolls back.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medcenter.db import session_scope
from medcenter.models import AuditEntry

_log = logging.getLogger("medcenter.audit")

_QUEUE_KEY = "audit_queue"


class AuditRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory
        self._pending: set[asyncio.Task] = set()

    def record(
        self,
        owner_id: UUID,
        action: str,
        description: str | None = None,
        entity_type: str | None = None,
        entity_id: Any = None,
        meta: dict[str, Any] | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> asyncio.Task | None:
        """Fire-and-forget INSERT into audit_entries.

        With ``session`` the insert waits for that session's commit and
        ``None`` is returned.
        """
        if not owner_id or not action:
            return None
        entry = {
            "owner_id": owner_id,
            "action": action,
            "description": description,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id is not None else None,
            "meta": meta,
        }
        if session is not None:
            self._queue(session).append(entry)
            return None
        return self._dispatch(entry)

    def _queue(self, session: AsyncSession) -> list[dict[str, Any]]:
        sync_session = session.sync_session
        queue = sync_session.info.get(_QUEUE_KEY)
        if queue is None:
            queue = sync_session.info[_QUEUE_KEY] = []
            event.listen(sync_session, "after_commit", self._on_commit)
            event.listen(sync_session, "after_rollback", self._on_rollback)
        return queue

    def _on_commit(self, sync_session) -> None:
        queue = sync_session.info.get(_QUEUE_KEY) or []
        entries = list(queue)
        queue.clear()
        for entry in entries:
            self._dispatch(entry)

    def _on_rollback(self, sync_session) -> None:
        queue = sync_session.info.get(_QUEUE_KEY)
        if queue:
            _log.info("dropping %d audit entr(ies) of a rolled back transaction", len(queue))
            queue.clear()

    def _dispatch(self, entry: dict[str, Any]) -> asyncio.Task | None:
        try:
            task = asyncio.ensure_future(self._write(entry))
        except RuntimeError as exc:
            # no running loop
            _log.warning("audit entry dropped (%s): %s", entry["action"], exc)
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, entry: dict[str, Any]) -> None:
        try:
            async with session_scope(self._factory) as session:
                session.add(AuditEntry(**entry))
        except Exception as exc:  # noqa: BLE001
            _log.warning("audit insert failed (non-fatal) action=%s: %s", entry["action"], exc)

    async def drain(self) -> None:
        """Wait for every pending audit write (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


async def create_entry(
    session: AsyncSession,
    owner_id: UUID,
    action: str,
    description: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    meta: dict[str, Any] | None = None,
) -> AuditEntry:
    """Synchronous (awaited) insert used by the explicit audit endpoint."""
    entry = AuditEntry(
        owner_id=owner_id,
        action=action,
        description=description,
        entity_type=entity_type,
        entity_id=entity_id,
        meta=meta,
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_entries(
    session: AsyncSession,
    owner_id: UUID,
    *,
    action: str | None = None,
    entity_type: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[AuditEntry], int]:
    conditions = [AuditEntry.owner_id == owner_id]
    if action:
        conditions.append(AuditEntry.action == action)
    if entity_type:
        conditions.append(AuditEntry.entity_type == entity_type)

    total = (await session.execute(select(func.count(AuditEntry.id)).where(*conditions))).scalar_one()
    rows = (
        await session.execute(
            select(AuditEntry)
            .where(*conditions)
            .order_by(AuditEntry.created_at.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
    ).scalars().all()
    return list(rows), int(total)
