from datetime import timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from ..config import Config
from ..models import QueueStats, WebhookEntry, WebhookStatus
from ..store import session_scope
from ..store.tables import WebhookQueueRow
from ..utils import Clock, utcnow

_FINISHED = (WebhookStatus.COMPLETED.value, WebhookStatus.FAILED.value)


class WebhookQueue:
    """Durable FIFO of document IDs pushed by Paperless webhooks.

    Written by the ingress handler in the API process and drained only by the
    scan driver while it holds the scan lock.
    """

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def enqueue(self, document_id: int, payload: Optional[str] = None) -> bool:
        """Queue a document; a no-op when it is already pending or processing."""
        with session_scope(self.session_factory) as session:
            # the partial unique index on active entries turns a duplicate into a no-op
            result = session.execute(
                sqlite_insert(WebhookQueueRow)
                .values(
                    document_id=document_id,
                    payload=payload,
                    status=WebhookStatus.PENDING.value,
                    attempts=0,
                    received_at=self.clock(),
                )
                .on_conflict_do_nothing()
            )
            inserted = bool(result.rowcount)
        if not inserted:
            logger.debug(f"[webhook] document {document_id} already queued; skipping duplicate")
            return False
        logger.info(f"[webhook] document {document_id} added to queue")
        return True

    def has_pending(self) -> bool:
        with session_scope(self.session_factory) as session:
            return (
                session.execute(
                    select(WebhookQueueRow.id).where(WebhookQueueRow.status == WebhookStatus.PENDING.value).limit(1)
                ).first()
                is not None
            )

    def consume_pending(self) -> List[int]:
        """Claim every pending entry for this process and return their document IDs in arrival order."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(WebhookQueueRow.id, WebhookQueueRow.document_id)
                .where(WebhookQueueRow.status == WebhookStatus.PENDING.value)
                .order_by(WebhookQueueRow.id)
            ).all()
            if not rows:
                return []
            claimed: List[int] = []
            for row_id, document_id in rows:
                # conditional per-row claim: a concurrent consumer cannot take the same row
                result = session.execute(
                    update(WebhookQueueRow)
                    .where(WebhookQueueRow.id == row_id, WebhookQueueRow.status == WebhookStatus.PENDING.value)
                    .values(
                        status=WebhookStatus.PROCESSING.value,
                        claimed_at=now,
                        attempts=WebhookQueueRow.attempts + 1,
                    )
                )
                if result.rowcount and document_id not in claimed:
                    claimed.append(document_id)
        logger.info(f"[webhook] consumed {len(claimed)} document(s): {claimed}")
        return claimed

    def _finish(self, document_id: int, status: WebhookStatus):
        with session_scope(self.session_factory) as session:
            session.execute(
                update(WebhookQueueRow)
                .where(
                    WebhookQueueRow.document_id == document_id,
                    WebhookQueueRow.status == WebhookStatus.PROCESSING.value,
                )
                .values(status=status.value, processed_at=self.clock())
            )

    def mark_completed(self, document_id: int):
        self._finish(document_id, WebhookStatus.COMPLETED)

    def mark_failed(self, document_id: int):
        self._finish(document_id, WebhookStatus.FAILED)

    def cleanup(self, retention: Optional[timedelta] = None) -> int:
        """Delete completed/failed entries processed before the retention window."""
        retention = retention or timedelta(hours=Config.WEBHOOK_RETENTION_HOURS)
        cutoff = self.clock() - retention
        with session_scope(self.session_factory) as session:
            result = session.execute(
                delete(WebhookQueueRow)
                .where(WebhookQueueRow.status.in_(_FINISHED))
                .where(WebhookQueueRow.processed_at <= cutoff)
            )
            removed = result.rowcount or 0
        if removed:
            logger.info(f"[webhook] cleaned up {removed} finished entries older than {retention}")
        return removed

    def recover_orphans(self, older_than: timedelta) -> int:
        """Return entries stuck in 'processing' (their claimer died) to 'pending'."""
        cutoff = self.clock() - older_than
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(WebhookQueueRow)
                .where(WebhookQueueRow.status == WebhookStatus.PROCESSING.value)
                .where(WebhookQueueRow.claimed_at <= cutoff)
                .values(status=WebhookStatus.PENDING.value, claimed_at=None)
            )
            recovered = result.rowcount or 0
        if recovered:
            logger.warning(f"[webhook] re-queued {recovered} orphaned entries claimed before {cutoff.isoformat()}")
        return recovered

    def get_stats(self) -> QueueStats:
        with session_scope(self.session_factory) as session:
            counts = dict(
                session.execute(
                    select(WebhookQueueRow.status, func.count()).group_by(WebhookQueueRow.status)
                ).all()
            )
        stats = QueueStats(**{status.value: counts.get(status.value, 0) for status in WebhookStatus})
        stats.total = sum(counts.values())
        return stats

    def get_recent(self, limit: int = 50) -> List[WebhookEntry]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(WebhookQueueRow).order_by(WebhookQueueRow.id.desc()).limit(limit)
            ).scalars()
            return [
                WebhookEntry(
                    id=row.id,
                    document_id=row.document_id,
                    payload=row.payload,
                    status=WebhookStatus(row.status),
                    attempts=row.attempts,
                    received_at=row.received_at,
                    claimed_at=row.claimed_at,
                    processed_at=row.processed_at,
                )
                for row in rows
            ]
