from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, TypeDecorator, UniqueConstraint, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Mapped, Session, mapped_column

from .database import Base

WORKER_STATE_ID = 1


class UTCDateTime(TypeDecorator):
    """Store naive UTC in SQLite, hand back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class WorkerStateRow(Base):
    __tablename__ = "worker_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=WORKER_STATE_ID)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pause_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    scan_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_scan_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    lock_held_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    lock_acquired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class WebhookQueueRow(Base):
    __tablename__ = "webhook_queue"
    __table_args__ = (
        # a document is queued at most once while pending or processing
        Index(
            "uq_webhook_queue_active_document",
            "document_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class RetryQueueRow(Base):
    __tablename__ = "retry_queue"

    document_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[str] = mapped_column(Text, nullable=False, default="")
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True, nullable=False)


class ProcessingLogRow(Base):
    __tablename__ = "processing_logs"
    __table_args__ = (UniqueConstraint("document_id", "attempt", name="uq_processing_logs_doc_attempt"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    workflow_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    vendor: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    receipt_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class WorkflowRow(Base):
    __tablename__ = "workflows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trigger_tag: Mapped[str] = mapped_column(String(200), nullable=False)
    schema_fields: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_mapping: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    title_template: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    processed_tag: Mapped[str] = mapped_column(String(200), nullable=False)
    failed_tag: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    skipped_tag: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class SkippedDocumentRow(Base):
    __tablename__ = "skipped_documents"

    document_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    file_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    skipped_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


def ensure_worker_state_row(session: Session, now: datetime) -> None:
    """Create the singleton worker state row if missing; a concurrent insert is ignored."""
    if session.get(WorkerStateRow, WORKER_STATE_ID) is not None:
        return
    session.execute(
        sqlite_insert(WorkerStateRow)
        .values(id=WORKER_STATE_ID, is_paused=False, scan_requested=False, updated_at=now)
        .on_conflict_do_nothing(index_elements=["id"])
    )
