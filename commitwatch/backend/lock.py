"""Named cluster-wide locks used to let exactly one process run a scheduler cycle.

On PostgreSQL the lock is a session-level advisory lock. It lives on the
connection that took it, so that connection is checked out of the pool for
as long as the lock is held. Other databases get a row in ``scheduler_locks``
with an expiry, which is good enough for single-node SQLite setups and tests.
The holder renews the expiry between units of work and stops once the row
has been taken over.
"""

import os
import socket
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, text, update
from sqlalchemy.exc import IntegrityError

from commitwatch.backend import database
from commitwatch.backend.database import DBSessionMixin
from commitwatch.models.lock import SchedulerLock
from commitwatch.util.clock import utcnow
from commitwatch.util.logging import Logger


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class DistributedLock(ABC):
    """Non-blocking named mutual exclusion across process instances"""

    def __init__(self, name: str):
        self.name = name
        self.logger = Logger(self.__class__.__name__)

    @property
    @abstractmethod
    def held(self) -> bool:
        """Whether this instance currently holds the lock"""

    @abstractmethod
    async def try_acquire(self) -> bool:
        """Take the lock if nobody holds it. Returns False when it is held elsewhere."""

    @abstractmethod
    async def release(self) -> None:
        """Give the lock back. Releasing a lock that is not held is a no-op."""

    async def renew(self) -> bool:
        """Keep a held lock alive. Returns False once it is no longer held."""
        return self.held

    @asynccontextmanager
    async def hold(self):
        """Yield whether the lock was acquired, releasing it on exit if it was"""
        acquired = await self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                await self.release()


class AdvisoryLock(DistributedLock):
    """PostgreSQL ``pg_try_advisory_lock`` keyed by ``hashtext(name)``"""

    def __init__(self, name: str, engine=None):
        super().__init__(name)
        self._engine = engine
        self._conn = None

    @property
    def held(self) -> bool:
        return self._conn is not None

    async def try_acquire(self) -> bool:
        if self._conn is not None:
            return True

        engine = self._engine or database.db.get_async_engine()
        conn = await engine.connect()
        try:
            acquired = await conn.scalar(text("SELECT pg_try_advisory_lock(hashtext(:name))"), {"name": self.name})
            # Advisory locks survive the transaction, only the session ends them
            await conn.commit()
        except Exception:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return False

        self._conn = conn
        self.logger.debug(f"Acquired advisory lock {self.name}")
        return True

    async def release(self) -> None:
        if self._conn is None:
            return

        conn, self._conn = self._conn, None
        try:
            await conn.scalar(text("SELECT pg_advisory_unlock(hashtext(:name))"), {"name": self.name})
            await conn.commit()
        finally:
            # Closing returns the connection to the pool; the server drops the lock with the session anyway
            await conn.close()
        self.logger.debug(f"Released advisory lock {self.name}")


class TableLock(DistributedLock, DBSessionMixin):
    """Lock row in ``scheduler_locks``; an expired row may be taken over"""

    def __init__(self, name: str, ttl_seconds: int = 1800, owner: Optional[str] = None, session=None):
        DistributedLock.__init__(self, name)
        DBSessionMixin.__init__(self, session)
        self.ttl = timedelta(seconds=ttl_seconds)
        self.owner = owner or default_owner()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    async def try_acquire(self) -> bool:
        if self._held:
            return True

        now = utcnow()
        async with self.get_async_session() as session:
            row = SchedulerLock(name=self.name, owner=self.owner, acquired_at=now, expires_at=now + self.ttl)
            try:
                await session.execute(
                    delete(SchedulerLock).where(SchedulerLock.name == self.name, SchedulerLock.expires_at < now)
                )
                session.add(row)
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            except Exception:
                # A busy database must not keep this transaction open
                await session.rollback()
                raise
            session.expunge(row)

        self._held = True
        self.logger.debug(f"Acquired lock {self.name} as {self.owner}")
        return True

    async def renew(self) -> bool:
        """Push the expiry out by another ttl, unless the row was taken over"""
        if not self._held:
            return False

        async with self.get_async_session() as session:
            try:
                result = await session.execute(
                    update(SchedulerLock)
                    .where(SchedulerLock.name == self.name, SchedulerLock.owner == self.owner)
                    .values(expires_at=utcnow() + self.ttl)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        if result.rowcount == 0:
            self._held = False
            self.logger.warning(f"Lock {self.name} expired and was taken over")
            return False
        return True

    async def release(self) -> None:
        if not self._held:
            return

        self._held = False
        async with self.get_async_session() as session:
            try:
                await session.execute(
                    delete(SchedulerLock).where(SchedulerLock.name == self.name, SchedulerLock.owner == self.owner)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        self.logger.debug(f"Released lock {self.name}")


def create_scheduler_lock(name: str, ttl_seconds: int = 1800) -> DistributedLock:
    """Pick the lock implementation matching the configured database"""
    if database.db.dialect_name == "postgresql":
        return AdvisoryLock(name)
    return TableLock(name, ttl_seconds=ttl_seconds)
