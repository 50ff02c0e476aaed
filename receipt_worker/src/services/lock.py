"""Cross-process scan lock stored on the worker state row.

The API process and the worker process never share memory, so the lock is a
single conditional UPDATE against the shared store: it only matches when
nobody holds the lock or when the current lease has expired. Expired leases
let a later caller reclaim a lock left behind by a killed process.
"""

from __future__ import annotations

import os
import socket
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from ..config import Config
from ..store import session_scope
from ..store.tables import WORKER_STATE_ID, WorkerStateRow, ensure_worker_state_row
from ..utils import Clock, utcnow


def default_holder_id(role: str = "worker") -> str:
    return f"{role}@{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LockCoordinator:
    """Single-flight guard for scan and webhook drain sections."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        holder_id: Optional[str] = None,
        ttl_seconds: Optional[float] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.holder_id = holder_id or default_holder_id()
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else Config.LOCK_TTL)
        self.clock = clock
        self.reclaimed_stale = False
        self.reclaimed_from: Optional[str] = None

    def _read_holder(self, session: Session) -> Optional[str]:
        return session.execute(
            select(WorkerStateRow.lock_held_by).where(WorkerStateRow.id == WORKER_STATE_ID)
        ).scalar_one_or_none()

    def acquire(self) -> bool:
        """Try to take the lock without blocking; False means 'try again next tick'.

        The UPDATE is a compare-and-set on the holder read just before it, so a
        lock that changed hands in between is not taken and never misattributed.
        """
        now = self.clock()
        stale_before = now - self.ttl
        with session_scope(self.session_factory) as session:
            ensure_worker_state_row(session, now)
            previous = self._read_holder(session)
            result = session.execute(
                update(WorkerStateRow)
                .where(WorkerStateRow.id == WORKER_STATE_ID)
                .where(WorkerStateRow.lock_held_by.is_not_distinct_from(previous))
                .where(
                    or_(
                        WorkerStateRow.lock_held_by.is_(None),
                        WorkerStateRow.lock_acquired_at < stale_before,
                    )
                )
                .values(lock_held_by=self.holder_id, lock_acquired_at=now, updated_at=now)
            )
            acquired = result.rowcount == 1

        self.reclaimed_stale = acquired and previous is not None
        self.reclaimed_from = previous if self.reclaimed_stale else None
        if self.reclaimed_stale:
            logger.warning(f"[lock] reclaimed stale lock from {previous} (ttl={self.ttl.total_seconds():.0f}s)")
        elif acquired:
            logger.debug(f"[lock] acquired by {self.holder_id}")
        else:
            logger.debug(f"[lock] busy; held by another process (me={self.holder_id})")
        return acquired

    def release(self):
        """Release the lock if this coordinator holds it; always safe to call."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(WorkerStateRow)
                .where(WorkerStateRow.id == WORKER_STATE_ID)
                .where(WorkerStateRow.lock_held_by == self.holder_id)
                .values(lock_held_by=None, lock_acquired_at=None, updated_at=now)
            )
        if result.rowcount:
            logger.debug(f"[lock] released by {self.holder_id}")

    def refresh(self) -> bool:
        """Extend the lease of a held lock; long passes call this between documents."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(WorkerStateRow)
                .where(WorkerStateRow.id == WORKER_STATE_ID)
                .where(WorkerStateRow.lock_held_by == self.holder_id)
                .values(lock_acquired_at=now, updated_at=now)
            )
        if not result.rowcount:
            logger.warning(f"[lock] lease refresh failed; lock no longer held by {self.holder_id}")
        return bool(result.rowcount)

    def holder(self) -> Optional[str]:
        with session_scope(self.session_factory) as session:
            return self._read_holder(session)

    @contextmanager
    def held(self) -> Iterator[bool]:
        """Scoped acquisition: yields whether the lock was taken, always releases."""
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
