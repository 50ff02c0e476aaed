"""Per-document processing log (the dashboard's view of each attempt).

One row per (document, attempt). Within a row the status only moves forward:

    detected -> processing -> completed | failed | skipped
    detected -> skipped                  (no workflow matched)
    retrying -> processing -> ...        (attempt > 1, after a failed attempt)

`processing` may repeat to report progress. Terminal rows never change.
"""

from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..errors import InvalidTransitionError
from ..models import ProcessingLogEntry, ProcessingStatus
from ..store import session_scope
from ..store.tables import ProcessingLogRow
from ..utils import Clock, utcnow
from ..utils.json_utils import safe_dumps, safe_loads

S = ProcessingStatus

INITIAL_STATES = {S.DETECTED, S.RETRYING}
TRANSITIONS: Dict[ProcessingStatus, set] = {
    S.DETECTED: {S.PROCESSING, S.SKIPPED},
    S.RETRYING: {S.PROCESSING},
    S.PROCESSING: {S.PROCESSING, S.COMPLETED, S.FAILED, S.SKIPPED},
    S.COMPLETED: set(),
    S.FAILED: set(),
    S.SKIPPED: set(),
}


def to_minor_units(amount: Any) -> Optional[int]:
    try:
        return round(float(amount) * 100)
    except (TypeError, ValueError):
        return None


def _to_entry(row: ProcessingLogRow) -> ProcessingLogEntry:
    return ProcessingLogEntry(
        document_id=row.document_id,
        attempt=row.attempt,
        status=ProcessingStatus(row.status),
        progress=row.progress,
        message=row.message,
        file_name=row.file_name,
        workflow_name=row.workflow_name,
        vendor=row.vendor,
        amount=row.amount,
        currency=row.currency,
        receipt_data=safe_loads(row.receipt_data) if row.receipt_data else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class ProcessingLog:
    """Records status transitions for each document attempt."""

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def record(
        self,
        document_id: int,
        attempt: int,
        status: ProcessingStatus,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        receipt_data: Optional[Dict[str, Any]] = None,
        **summary: Any,
    ) -> ProcessingLogEntry:
        """Create or advance the row for this attempt, enforcing the allowed transitions."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(ProcessingLogRow).where(
                    ProcessingLogRow.document_id == document_id, ProcessingLogRow.attempt == attempt
                )
            ).scalar_one_or_none()

            if row is None:
                if status not in INITIAL_STATES:
                    raise InvalidTransitionError(
                        f"document {document_id} attempt {attempt}: cannot start in '{status.value}'"
                    )
                row = ProcessingLogRow(document_id=document_id, attempt=attempt, created_at=now, progress=0)
                session.add(row)
            else:
                current = ProcessingStatus(row.status)
                if status not in TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        f"document {document_id} attempt {attempt}: '{current.value}' -> '{status.value}' not allowed"
                    )

            row.status = status.value
            row.updated_at = now
            if progress is not None:
                row.progress = max(0, min(100, progress))
            if message is not None:
                row.message = message
            if receipt_data is not None:
                row.receipt_data = safe_dumps(receipt_data)
            for key in ("file_name", "workflow_name", "vendor", "currency"):
                if summary.get(key) is not None:
                    setattr(row, key, summary[key])
            if summary.get("amount") is not None:
                row.amount = to_minor_units(summary["amount"])
            session.flush()
            entry = _to_entry(row)

        logger.debug(f"[doc:{document_id}] status={status.value} attempt={attempt} progress={entry.progress}")
        return entry

    def detected(self, document_id: int, attempt: int = 1, file_name: Optional[str] = None) -> ProcessingLogEntry:
        return self.record(document_id, attempt, S.DETECTED, progress=0, file_name=file_name)

    def retrying(self, document_id: int, attempt: int, message: Optional[str] = None) -> ProcessingLogEntry:
        return self.record(document_id, attempt, S.RETRYING, progress=0, message=message)

    def processing(self, document_id: int, attempt: int, progress: int, message: Optional[str] = None, **summary):
        return self.record(document_id, attempt, S.PROCESSING, progress=progress, message=message, **summary)

    def completed(self, document_id: int, attempt: int, receipt_data: Optional[Dict[str, Any]] = None, **summary):
        return self.record(
            document_id, attempt, S.COMPLETED, progress=100, message="Processed successfully",
            receipt_data=receipt_data, **summary,
        )

    def failed(self, document_id: int, attempt: int, message: str) -> ProcessingLogEntry:
        return self.record(document_id, attempt, S.FAILED, progress=100, message=message)

    def skipped(self, document_id: int, attempt: int, message: str, **summary) -> ProcessingLogEntry:
        return self.record(document_id, attempt, S.SKIPPED, progress=100, message=message, **summary)

    def begin(self, document_id: int, retrying: bool = False, file_name: Optional[str] = None,
              message: Optional[str] = None) -> ProcessingLogEntry:
        """Open the row for the next attempt.

        A row that never left detected/retrying is reused. A row still in
        'processing' belongs to an interrupted pass and is closed as failed.
        """
        latest = self.latest(document_id)
        if latest and latest.status in INITIAL_STATES:
            return latest
        if latest and latest.status == S.PROCESSING:
            self.failed(document_id, latest.attempt, "Interrupted before completion")
        attempt = latest.attempt + 1 if latest else 1
        if retrying:
            return self.retrying(document_id, attempt, message=message)
        return self.detected(document_id, attempt, file_name=file_name)

    def history(self, document_id: int) -> List[ProcessingLogEntry]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(ProcessingLogRow)
                .where(ProcessingLogRow.document_id == document_id)
                .order_by(ProcessingLogRow.attempt)
            ).scalars()
            return [_to_entry(row) for row in rows]

    def latest(self, document_id: int) -> Optional[ProcessingLogEntry]:
        entries = self.history(document_id)
        return entries[-1] if entries else None

    def next_attempt(self, document_id: int) -> int:
        latest = self.latest(document_id)
        return latest.attempt + 1 if latest else 1

    def latest_extraction(self, document_id: int) -> Optional[Dict[str, Any]]:
        """Most recent stored extraction result, reused by partial retries."""
        for entry in reversed(self.history(document_id)):
            if entry.receipt_data:
                return entry.receipt_data
        return None

    def get_recent(self, limit: int = 50) -> List[ProcessingLogEntry]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(ProcessingLogRow).order_by(ProcessingLogRow.updated_at.desc(), ProcessingLogRow.id.desc()).limit(limit)
            ).scalars()
            return [_to_entry(row) for row in rows]
