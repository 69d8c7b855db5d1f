"""
Row locking for the critical sections of the registration engine.

Each critical section takes two locks: an in-process ``asyncio.Lock`` keyed
by row, held until the unit of work finishes, and a ``SELECT ... FOR UPDATE``
on the row itself. The row lock serialises across processes on PostgreSQL;
the in-process lock covers stores that ignore FOR UPDATE (SQLite) and keeps
a single worker from queueing transactions on the database.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Iterable, Optional, Type
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oldmanfooty.database.models import Carnival, CarnivalClub, User

logger = logging.getLogger(__name__)


class KeyedLocks:
    """Lazily created asyncio locks keyed by (kind, id)."""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: Hashable):
        # Sorted acquisition so two holders of overlapping key sets cannot deadlock
        ordered = sorted(set(keys), key=repr)
        registered = []
        acquired = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._waiters[key] = self._waiters.get(key, 0) + 1
                registered.append(key)
                if lock.locked():
                    logger.debug("Waiting for lock %r (%d waiting)", key, self._waiters[key] - 1)
                await lock.acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(registered):
                if key in acquired:
                    self._locks[key].release()
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    # Nobody holds or waits on it any more
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


_locks = KeyedLocks()


def get_keyed_locks() -> KeyedLocks:
    return _locks


def carnival_lock(*carnival_ids: int):
    """Hold the process-wide locks for one or more carnival rows."""
    return _locks.hold(*(("carnival", carnival_id) for carnival_id in carnival_ids))


def user_lock(*user_ids: int):
    """Hold the process-wide locks for one or more user rows."""
    return _locks.hold(*(("user", user_id) for user_id in user_ids))


async def _select_for_update(session: AsyncSession, model: Type, row_id: int):
    result = await session.execute(
        select(model)
        .where(model.id == row_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_carnival_row(session: AsyncSession, carnival_id: int) -> Optional[Carnival]:
    """SELECT the carnival FOR UPDATE, refreshing any stale copy in the session."""
    return await _select_for_update(session, Carnival, carnival_id)


async def lock_registration_row(session: AsyncSession, registration_id: int) -> Optional[CarnivalClub]:
    return await _select_for_update(session, CarnivalClub, registration_id)


async def lock_user_rows(session: AsyncSession, user_ids: Iterable[int]) -> Dict[int, User]:
    """Lock several user rows in id order; returns the rows found, keyed by id."""
    locked = {}
    for user_id in sorted(set(user_ids)):
        user = await _select_for_update(session, User, user_id)
        if user is not None:
            locked[user_id] = user
    return locked
