"""Retry queue with tiered backoff for failed document processing.

Each change touches only the affected entry, in a single write, so the
worker's extraction threads and the operator CLI in another process never
overwrite each other's updates. Entries that cannot be parsed are dropped
with a warning; store errors propagate to the caller.
"""

from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from ..config import Config
from ..models import RetryEntry
from ..store import session_scope
from ..store.tables import RetryQueueRow
from ..utils import Clock, TextUtils, utcnow
from ..utils.json_utils import safe_dumps, safe_loads

# 1 minute, 5 minutes, 15 minutes; later attempts stay on the last tier
BACKOFF_DELAYS = (60, 300, 900)

# maps the attempt count after a failure to the time of the next attempt
Schedule = Callable[[int], datetime]


class RetryBackend(Protocol):
    def load(self) -> Dict[int, RetryEntry]: ...  # noqa: E701

    def record_failure(self, document_id: int, error: str, schedule: Schedule) -> RetryEntry: ...  # noqa: E701

    def remove(self, document_id: int) -> bool: ...  # noqa: E701

    def reschedule_all(self, when: datetime) -> int: ...  # noqa: E701

    def clear(self) -> int: ...  # noqa: E701


class JsonFileRetryBackend:
    """Persist the queue as a JSON array in a flat file (atomic replace).

    Writers in this process are serialized by a lock; the file backend is meant
    for a single worker process.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or Config.RETRY_QUEUE_PATH)
        self._lock = threading.Lock()

    def load(self) -> Dict[int, RetryEntry]:
        if not self.path.exists():
            return {}
        try:
            raw = safe_loads(self.path.read_bytes())
            entries = [RetryEntry.model_validate(item) for item in raw]
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            logger.warning(f"[queue] corrupt retry queue file at {self.path}, starting fresh: {exc}")
            return {}
        return {entry.document_id: entry for entry in entries}

    def _save(self, entries: Dict[int, RetryEntry]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        payload = [entry.model_dump(mode="json") for entry in entries.values()]
        temp_path.write_text(safe_dumps(payload, indent=True), encoding="utf-8")
        temp_path.replace(self.path)

    def record_failure(self, document_id: int, error: str, schedule: Schedule) -> RetryEntry:
        with self._lock:
            entries = self.load()
            existing = entries.get(document_id)
            attempts = existing.attempts + 1 if existing else 1
            entry = RetryEntry(
                document_id=document_id, attempts=attempts, last_error=error, next_retry_at=schedule(attempts)
            )
            entries[document_id] = entry
            self._save(entries)
        return entry

    def remove(self, document_id: int) -> bool:
        with self._lock:
            entries = self.load()
            if entries.pop(document_id, None) is None:
                return False
            self._save(entries)
        return True

    def reschedule_all(self, when: datetime) -> int:
        with self._lock:
            entries = {
                document_id: entry.model_copy(update={"next_retry_at": when})
                for document_id, entry in self.load().items()
            }
            self._save(entries)
        return len(entries)

    def clear(self) -> int:
        with self._lock:
            count = len(self.load())
            self._save({})
        return count


class DatabaseRetryBackend:
    """Persist the queue in the retry_queue table of the shared store, one row per document."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def load(self) -> Dict[int, RetryEntry]:
        entries: Dict[int, RetryEntry] = {}
        with session_scope(self.session_factory) as session:
            for row in session.execute(select(RetryQueueRow)).scalars():
                try:
                    entries[row.document_id] = RetryEntry(
                        document_id=row.document_id,
                        attempts=row.attempts,
                        last_error=row.last_error,
                        next_retry_at=row.next_retry_at,
                    )
                except ValidationError as exc:
                    logger.warning(f"[queue] ignoring unreadable retry entry for document {row.document_id}: {exc}")
        return entries

    def record_failure(self, document_id: int, error: str, schedule: Schedule) -> RetryEntry:
        with session_scope(self.session_factory) as session:
            # the upsert takes the write lock, so the read-back below sees no concurrent change
            insert_stmt = sqlite_insert(RetryQueueRow).values(
                document_id=document_id, attempts=1, last_error=error, next_retry_at=schedule(1)
            )
            session.execute(
                insert_stmt.on_conflict_do_update(
                    index_elements=[RetryQueueRow.document_id],
                    set_={"attempts": RetryQueueRow.attempts + 1, "last_error": insert_stmt.excluded.last_error},
                )
            )
            attempts = session.execute(
                select(RetryQueueRow.attempts).where(RetryQueueRow.document_id == document_id)
            ).scalar_one()
            next_retry_at = schedule(attempts)
            session.execute(
                update(RetryQueueRow)
                .where(RetryQueueRow.document_id == document_id)
                .values(next_retry_at=next_retry_at)
            )
        return RetryEntry(document_id=document_id, attempts=attempts, last_error=error, next_retry_at=next_retry_at)

    def remove(self, document_id: int) -> bool:
        with session_scope(self.session_factory) as session:
            result = session.execute(delete(RetryQueueRow).where(RetryQueueRow.document_id == document_id))
            return bool(result.rowcount)

    def reschedule_all(self, when: datetime) -> int:
        with session_scope(self.session_factory) as session:
            return session.execute(update(RetryQueueRow).values(next_retry_at=when)).rowcount or 0

    def clear(self) -> int:
        with session_scope(self.session_factory) as session:
            return session.execute(delete(RetryQueueRow)).rowcount or 0


class RetryQueue:
    """Failed documents awaiting another attempt, keyed by document ID."""

    def __init__(self, backend: RetryBackend, max_retries: Optional[int] = None, clock: Clock = utcnow):
        self.backend = backend
        self.max_retries = max_retries if max_retries is not None else Config.MAX_RETRIES
        self.clock = clock

    @staticmethod
    def calculate_backoff(attempts: int) -> timedelta:
        """Delay before the next attempt after `attempts` failures (1-based)."""
        index = max(0, min(attempts - 1, len(BACKOFF_DELAYS) - 1))
        return timedelta(seconds=BACKOFF_DELAYS[index])

    def add(self, document_id: int, error: str) -> RetryEntry:
        """Record a failure: bump attempts and reschedule by the backoff table."""
        now = self.clock()
        entry = self.backend.record_failure(
            document_id,
            TextUtils.truncate_text(error, Config.LOG_ERROR_MAX),
            lambda attempts: now + self.calculate_backoff(attempts),
        )
        if entry.attempts < self.max_retries:
            delay = self.calculate_backoff(entry.attempts)
            logger.warning(
                f"[queue] document {document_id} failed (attempt {entry.attempts}/{self.max_retries}), "
                f"will retry in {TextUtils.format_delay(delay.total_seconds())}"
            )
        else:
            logger.warning(f"[queue] document {document_id} failed (attempt {entry.attempts}/{self.max_retries})")
        return entry

    def get_ready_for_retry(self) -> List[RetryEntry]:
        now = self.clock()
        ready = [entry for entry in self.backend.load().values() if entry.next_retry_at <= now]
        return sorted(ready, key=lambda entry: entry.next_retry_at)

    def get(self, document_id: int) -> Optional[RetryEntry]:
        return self.backend.load().get(document_id)

    def get_attempts(self, document_id: int) -> int:
        entry = self.get(document_id)
        return entry.attempts if entry else 0

    def should_give_up(self, document_id: int) -> bool:
        return self.get_attempts(document_id) >= self.max_retries

    def has(self, document_id: int) -> bool:
        return self.get(document_id) is not None

    def remove(self, document_id: int):
        self.backend.remove(document_id)

    def size(self) -> int:
        return len(self.backend.load())

    def get_all(self) -> List[RetryEntry]:
        return sorted(self.backend.load().values(), key=lambda entry: entry.document_id)

    def retry_all(self) -> int:
        """Make every queued document due now; attempt counts are kept."""
        count = self.backend.reschedule_all(self.clock())
        logger.info(f"[queue] reset {count} item(s) for immediate retry")
        return count

    def clear(self) -> int:
        count = self.backend.clear()
        logger.info(f"[queue] cleared {count} item(s)")
        return count

    def log_stats(self):
        try:
            logger.info(f"[queue] {self.size()} document(s) queued, {len(self.get_ready_for_retry())} ready for retry")
        except Exception as exc:
            logger.warning(f"[queue] stats unavailable: {exc}")


def build_retry_queue(session_factory: sessionmaker[Session], clock: Clock = utcnow) -> RetryQueue:
    """Retry queue on the backend selected by RETRY_QUEUE_BACKEND."""
    if Config.RETRY_QUEUE_BACKEND == "file":
        backend: RetryBackend = JsonFileRetryBackend(Config.RETRY_QUEUE_PATH)
    else:
        backend = DatabaseRetryBackend(session_factory)
    return RetryQueue(backend, max_retries=Config.MAX_RETRIES, clock=clock)
