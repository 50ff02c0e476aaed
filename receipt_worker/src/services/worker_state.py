from typing import Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from ..models import ScanResult, WorkerStatus
from ..store import session_scope
from ..store.tables import WORKER_STATE_ID, WorkerStateRow, ensure_worker_state_row
from ..utils import Clock, utcnow


class WorkerStateRepository:
    """Pause/resume flags, manual scan requests and last scan bookkeeping.

    Everything lives on the single worker_state row so that the API process can
    flip flags that the worker process observes on its next tick.
    """

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def initialize(self):
        """Ensure the state row exists (called on startup)."""
        with session_scope(self.session_factory) as session:
            ensure_worker_state_row(session, self.clock())

    def _update(self, *conditions, **values) -> int:
        values["updated_at"] = self.clock()
        with session_scope(self.session_factory) as session:
            ensure_worker_state_row(session, values["updated_at"])
            result = session.execute(
                update(WorkerStateRow)
                .where(WorkerStateRow.id == WORKER_STATE_ID, *conditions)
                .values(**values)
            )
            return result.rowcount

    def get_status(self) -> WorkerStatus:
        with session_scope(self.session_factory) as session:
            ensure_worker_state_row(session, self.clock())
            row = session.get(WorkerStateRow, WORKER_STATE_ID)
            last_result = None
            if row.last_scan_result:
                try:
                    last_result = ScanResult.model_validate_json(row.last_scan_result)
                except ValidationError:
                    logger.warning("[state] stored last scan result is unreadable; ignoring it")
            return WorkerStatus(
                is_paused=row.is_paused,
                pause_reason=row.pause_reason,
                paused_at=row.paused_at,
                scan_requested=row.scan_requested,
                last_scan_at=row.last_scan_at,
                last_scan_result=last_result,
                lock_held_by=row.lock_held_by,
                lock_acquired_at=row.lock_acquired_at,
            )

    def is_paused(self) -> bool:
        return self.get_status().is_paused

    def pause(self, reason: Optional[str] = None):
        self._update(is_paused=True, paused_at=self.clock(), pause_reason=reason)
        logger.info(f"[state] worker paused{f': {reason}' if reason else ''}")

    def resume(self):
        self._update(is_paused=False, paused_at=None, pause_reason=None)
        logger.info("[state] worker resumed")

    def request_scan(self):
        """Set the manual trigger flag; the driver consumes it on its next tick."""
        self._update(scan_requested=True)
        logger.info("[state] scan requested")

    def consume_scan_request(self) -> bool:
        """Read-and-clear the manual trigger flag in one conditional UPDATE."""
        return self._update(WorkerStateRow.scan_requested.is_(True), scan_requested=False) == 1

    def record_scan(self, result: ScanResult):
        self._update(last_scan_at=result.timestamp, last_scan_result=result.model_dump_json())
        logger.info(
            f"[state] scan recorded found={result.documents_found} queued={result.documents_queued} "
            f"skipped={result.documents_skipped} completed={result.documents_completed} "
            f"failed={result.documents_failed} retries={result.retries_processed}"
        )

    def last_scan_at(self):
        return self.get_status().last_scan_at
