"""
Locks held until a session's outermost transaction ends.

Used wherever a read-then-write must not interleave: the appointment slot
check and patient code allocation. In-process the key maps to an
``asyncio.Lock``; on PostgreSQL a transaction-scoped advisory lock covers
other processes as well.
"""
from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Callable, Hashable

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession

_HELD_KEY = "held_locks"


class KeyedLocks:
    """One asyncio.Lock per key; dropped once nobody waits on it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    async def acquire(self, key: Hashable) -> Callable[[], None]:
        """Wait for ``key``; returns an idempotent release callback."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            lock.release()
            self._forget(key)

        return release

    def _forget(self, key: Hashable) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def advisory_key(*parts: object) -> int:
    digest = hashlib.sha256(":".join(str(p) for p in parts).encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


async def hold_for_transaction(session: AsyncSession, locks: KeyedLocks, key: Hashable) -> None:
    """Take ``key`` until ``session`` commits or rolls back.

    Re-entrant within one session.
    """
    held: set = session.info.setdefault(_HELD_KEY, set())
    if (id(locks), key) in held:
        return

    release = await locks.acquire(key)
    held.add((id(locks), key))

    def _on_end(sync_session, transaction) -> None:
        if transaction.parent is None and (id(locks), key) in held:
            held.discard((id(locks), key))
            release()

    event.listen(session.sync_session, "after_transaction_end", _on_end)

    if session.get_bind().dialect.name == "postgresql":
        await session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": advisory_key(*_parts(key))})


def _parts(key: Hashable) -> tuple:
    return key if isinstance(key, tuple) else (key,)
