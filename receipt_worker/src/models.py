from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessingStatus(str, Enum):
    DETECTED = "detected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScanResult(BaseModel):
    """Outcome of one automation pass, persisted on the worker state row."""

    documents_found: int = 0
    documents_queued: int = 0
    documents_skipped: int = 0
    documents_completed: int = 0
    documents_failed: int = 0
    retries_processed: int = 0
    timestamp: datetime


class WorkerStatus(BaseModel):
    is_paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None
    scan_requested: bool = False
    last_scan_at: Optional[datetime] = None
    last_scan_result: Optional[ScanResult] = None
    lock_held_by: Optional[str] = None
    lock_acquired_at: Optional[datetime] = None


class RetryEntry(BaseModel):
    document_id: int
    attempts: int = Field(..., ge=1)
    last_error: str = ""
    next_retry_at: datetime


class WebhookEntry(BaseModel):
    id: int
    document_id: int
    payload: Optional[str] = None
    status: WebhookStatus
    attempts: int = 0
    received_at: datetime
    claimed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class ProcessingLogEntry(BaseModel):
    document_id: int
    attempt: int
    status: ProcessingStatus
    progress: int = Field(0, ge=0, le=100)
    message: Optional[str] = None
    file_name: Optional[str] = None
    workflow_name: Optional[str] = None
    vendor: Optional[str] = None
    amount: Optional[int] = Field(None, description="Amount in minor currency units")
    currency: Optional[str] = None
    receipt_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


FieldType = Literal["string", "number", "integer", "boolean", "array", "object"]


class SchemaField(BaseModel):
    """One declarative field of an extraction schema.

    Workflows describe what to extract as data: a list of these fields is
    turned into a JSON Schema for the model and into a pydantic model for
    validating its answer. Nothing in a workflow is ever executed.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    type: FieldType = "string"
    description: Optional[str] = None
    required: bool = True
    items: Optional[SchemaField] = Field(None, description="Element description for array fields")
    fields: List[SchemaField] = Field(default_factory=list, description="Members of object fields")


class OutputMapping(BaseModel):
    model_config = ConfigDict(extra="forbid")

    correspondent_field: Optional[str] = None
    date_field: Optional[str] = None
    tags_to_apply: List[str] = Field(default_factory=list)
    tag_fields: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, str] = Field(
        default_factory=dict, description="Paperless custom field name -> extracted field ('*' = whole payload)"
    )


class WorkflowDefinition(BaseModel):
    id: Optional[int] = None
    name: str
    enabled: bool = True
    priority: int = 0
    trigger_tag: str
    fields: List[SchemaField]
    prompt_instructions: Optional[str] = None
    output_mapping: OutputMapping = Field(default_factory=OutputMapping)
    title_template: Optional[str] = None
    processed_tag: str
    failed_tag: Optional[str] = None
    skipped_tag: Optional[str] = None


class DocumentWork(BaseModel):
    model_config = ConfigDict(extra="forbid")

    doc_id: int = Field(..., description="Paperless document ID")
    workflow: WorkflowDefinition
    attempt: int = Field(1, ge=1, description="1-based attempt number for this document")
    file_name: Optional[str] = Field(None, description="Document title at discovery time")
    from_retry_queue: bool = False
