from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from ..config import Config
from ..errors import DocumentStoreError
from ..models import DocumentWork, ProcessingStatus, ScanResult, WorkflowDefinition
from ..queues import RetryQueue
from ..store import session_scope
from ..store.tables import SkippedDocumentRow
from ..utils import Clock, TextUtils, utcnow
from .output_mapping import build_document_update, build_note
from .processing_log import ProcessingLog
from .schema import build_model, to_json_schema
from .workflows import WorkflowRegistry, select_for_tags

S = ProcessingStatus


class DocumentProcessor:
    """Runs workflows against Paperless documents and records every attempt.

    Per-document failures never escape `process_document`: they are logged,
    recorded as a failed attempt and handed to the retry queue. Only store
    errors (the processing log itself being unwritable) propagate.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        connector,
        extractor,
        retry_queue: RetryQueue,
        processing_log: Optional[ProcessingLog] = None,
        workflows: Optional[WorkflowRegistry] = None,
        clock: Clock = utcnow,
        workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.connector = connector
        self.extractor = extractor
        self.retry_queue = retry_queue
        self.log = processing_log or ProcessingLog(session_factory, clock)
        self.workflows = workflows or WorkflowRegistry(session_factory)
        self.clock = clock
        self.workers = max(1, workers if workers is not None else Config.EXTRACTION_WORKERS)

    def _begin(self, doc_id: int, from_retry_queue: bool, file_name: Optional[str] = None):
        retrying = from_retry_queue or self.retry_queue.has(doc_id)
        message = None
        if retrying:
            entry = self.retry_queue.get(doc_id)
            message = f"Retry {entry.attempts + 1}/{self.retry_queue.max_retries}" if entry else "Retrying"
        return self.log.begin(doc_id, retrying=retrying, file_name=file_name, message=message)

    def _record_skip(self, doc_id: int, reason: str, file_name: Optional[str]):
        with session_scope(self.session_factory) as session:
            session.merge(
                SkippedDocumentRow(document_id=doc_id, reason=reason, file_name=file_name, skipped_at=self.clock())
            )

    def _clear_skip(self, doc_id: int):
        with session_scope(self.session_factory) as session:
            session.execute(delete(SkippedDocumentRow).where(SkippedDocumentRow.document_id == doc_id))

    def _is_settled(self, doc_id: int) -> bool:
        """Skipped for lack of data, or failed for good; discovery leaves these alone."""
        with session_scope(self.session_factory) as session:
            if session.get(SkippedDocumentRow, doc_id) is not None:
                return True
        # failures awaiting another attempt stay queued, so a failed latest row means the document gave up
        latest = self.log.latest(doc_id)
        return latest is not None and latest.status == S.FAILED

    def _add_tag_quietly(self, doc_id: int, tag_name: Optional[str]):
        if not tag_name:
            return
        try:
            self.connector.add_tag(doc_id, tag_name)
            logger.info(f"[doc:{doc_id}] tagged as '{tag_name}'")
        except DocumentStoreError as exc:
            logger.error(f"[doc:{doc_id}] failed to add tag '{tag_name}': {exc}")

    def _handle_failure(
        self, doc_id: int, attempt: int, workflow: Optional[WorkflowDefinition], exc: Exception
    ) -> ProcessingStatus:
        message = TextUtils.error_message(exc, Config.LOG_ERROR_MAX)
        logger.error(f"[doc:{doc_id}] attempt {attempt} failed: {message}")

        self.retry_queue.add(doc_id, message)
        if self.retry_queue.should_give_up(doc_id):
            attempts = self.retry_queue.get_attempts(doc_id)
            logger.error(f"[doc:{doc_id}] giving up after {attempts} attempt(s)")
            self.log.failed(doc_id, attempt, f"Gave up after {attempts} attempt(s): {message}")
            self._add_tag_quietly(doc_id, workflow.failed_tag if workflow else Config.FAILED_TAG)
            self.retry_queue.remove(doc_id)
        else:
            self.log.failed(doc_id, attempt, message)
        return S.FAILED

    def _summary(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {key: data.get(key) for key in ("vendor", "amount", "currency")}

    def _reuse_extraction(self, work: DocumentWork) -> Optional[Dict[str, Any]]:
        if not work.from_retry_queue or Config.RETRY_STRATEGY != "partial":
            return None
        data = self.log.latest_extraction(work.doc_id)
        if data:
            logger.info(f"[doc:{work.doc_id}] reusing extraction from a previous attempt")
            self.log.processing(work.doc_id, work.attempt, 50, "Reusing existing extraction data")
        return data

    def _extract(self, work: DocumentWork, document: Dict[str, Any]) -> List[Dict[str, Any]]:
        workflow = work.workflow
        image = self.connector.download_thumbnail_or_file(work.doc_id)
        self.log.processing(work.doc_id, work.attempt, 20, f"Downloaded {len(image) / 1024:.1f} KB")

        existing_tags = self.connector.tag_names(document)
        self.log.processing(work.doc_id, work.attempt, 30, "Extracting data with AI")
        return self.extractor.extract(
            image,
            to_json_schema(workflow.fields),
            prompt_instructions=workflow.prompt_instructions,
            existing_tags=existing_tags,
            validator=build_model(f"Workflow{workflow.id or 0}Item", workflow.fields),
        )

    def _skip_empty(self, work: DocumentWork, document: Dict[str, Any]) -> ProcessingStatus:
        doc_id = work.doc_id
        logger.warning(f"[doc:{doc_id}] no data extracted; marking as skipped")
        self._add_tag_quietly(doc_id, work.workflow.skipped_tag)
        self._record_skip(doc_id, "no_data", document.get("title"))
        self.log.skipped(doc_id, work.attempt, "No data found (skipped)")
        self.retry_queue.remove(doc_id)
        return S.SKIPPED

    def process_document(self, work: DocumentWork, document: Optional[Dict[str, Any]] = None) -> ProcessingStatus:
        """Run one attempt for a document whose log row is already open."""
        doc_id = work.doc_id
        workflow = work.workflow
        logger.info(
            f"[doc:{doc_id}] workflow '{workflow.name}' attempt {work.attempt} "
            f"(strategy={Config.RETRY_STRATEGY}, retry={work.from_retry_queue})"
        )
        self.log.processing(
            doc_id, work.attempt, 5, f"Running workflow '{workflow.name}'",
            workflow_name=workflow.name, file_name=work.file_name,
        )

        try:
            data = self._reuse_extraction(work)
            document = document or self.connector.get_document(doc_id)
            if data is None:
                self.log.processing(doc_id, work.attempt, 10, None, file_name=document.get("title"))
                items = self._extract(work, document)
                if not items:
                    return self._skip_empty(work, document)
                data = items[0]
                logger.debug(f"[doc:{doc_id}] extracted: {TextUtils.truncate_text(data, Config.LOG_LLM_OUTPUT_MAX)}")
                self.log.processing(
                    doc_id, work.attempt, 60, "AI extraction complete", receipt_data=data, **self._summary(data)
                )

            updates = build_document_update(self.connector, document, workflow, data, Config.UPDATE_CONTENT)
            self.connector.update_document(doc_id, updates)
            logger.info(f"[doc:{doc_id}] document updated (title={updates.get('title')!r})")

            try:
                self.connector.add_note(doc_id, build_note(data, workflow.name))
            except DocumentStoreError as exc:
                logger.warning(f"[doc:{doc_id}] failed to add note: {exc}")

        except Exception as exc:
            return self._handle_failure(doc_id, work.attempt, workflow, exc)

        self.log.completed(doc_id, work.attempt, receipt_data=data, workflow_name=workflow.name, **self._summary(data))
        self.retry_queue.remove(doc_id)
        self._clear_skip(doc_id)
        logger.info(f"[doc:{doc_id}] completed")
        return S.COMPLETED

    def process_by_id(self, doc_id: int, from_retry_queue: bool = False) -> ProcessingStatus:
        """Process a document known only by ID (webhook or retry): pick the workflow from its tags."""
        try:
            document = self.connector.get_document(doc_id)
            tag_names = self.connector.tag_names(document)
        except DocumentStoreError as exc:
            entry = self._begin(doc_id, from_retry_queue)
            self.log.processing(doc_id, entry.attempt, 5, "Fetching document")
            return self._handle_failure(doc_id, entry.attempt, None, exc)

        file_name = document.get("title")
        entry = self._begin(doc_id, from_retry_queue, file_name=file_name)
        workflow = select_for_tags(self.workflows.list_enabled(), tag_names)
        if workflow is None:
            logger.info(f"[doc:{doc_id}] no workflow matches tags {tag_names}; skipping")
            if entry.status == S.RETRYING:
                self.log.processing(doc_id, entry.attempt, 5, "Resolving workflow")
            self.log.skipped(doc_id, entry.attempt, "No workflow matches the document's tags", file_name=file_name)
            self.retry_queue.remove(doc_id)
            return S.SKIPPED

        work = DocumentWork(
            doc_id=doc_id,
            workflow=workflow,
            attempt=entry.attempt,
            file_name=file_name,
            from_retry_queue=entry.status == S.RETRYING,
        )
        return self.process_document(work, document)

    def _discover(self, result: ScanResult) -> List[DocumentWork]:
        """Untagged documents per enabled workflow; the highest-priority workflow claims a document first."""
        work_items: List[DocumentWork] = []
        seen = set()
        for workflow in self.workflows.list_enabled():
            excluded = [tag for tag in (workflow.failed_tag, workflow.skipped_tag) if tag]
            documents = self.connector.list_untagged_documents(
                workflow.trigger_tag, workflow.processed_tag, excluded_tags=excluded
            )
            logger.info(f"[scan] workflow '{workflow.name}': {len(documents)} unprocessed document(s)")
            for document in documents:
                doc_id = int(document["id"])
                if doc_id in seen:
                    continue
                seen.add(doc_id)
                queued = self.retry_queue.has(doc_id)
                if not queued and self._is_settled(doc_id):
                    logger.debug(f"[scan] document {doc_id} already skipped or given up; leaving it alone")
                    continue
                result.documents_found += 1
                if queued:
                    # handled by the retry phase once its backoff has elapsed
                    continue
                entry = self.log.begin(doc_id, file_name=document.get("title"))
                work_items.append(
                    DocumentWork(doc_id=doc_id, workflow=workflow, attempt=entry.attempt, file_name=document.get("title"))
                )
        return work_items

    def _run_all(
        self,
        tasks: List[Callable[[], ProcessingStatus]],
        should_continue: Callable[[], bool],
        heartbeat: Optional[Callable[[], Any]],
    ) -> List[ProcessingStatus]:
        def run(task):
            if not should_continue():
                return None
            status = task()
            if heartbeat:
                heartbeat()
            return status

        if self.workers == 1 or len(tasks) < 2:
            statuses = []
            for task in tasks:
                if not should_continue():
                    logger.info("[scan] stop requested; leaving remaining documents for the next pass")
                    break
                statuses.append(run(task))
            return statuses

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [executor.submit(run, task) for task in tasks]
            return [status for future in as_completed(futures) if (status := future.result()) is not None]

    def run_automation(
        self,
        should_continue: Optional[Callable[[], bool]] = None,
        heartbeat: Optional[Callable[[], Any]] = None,
    ) -> ScanResult:
        """One automation pass: new documents for every enabled workflow, then due retries."""
        should_continue = should_continue or (lambda: True)
        result = ScanResult(timestamp=self.clock())
        self.retry_queue.log_stats()

        work_items = self._discover(result)
        result.documents_queued = len(work_items)
        statuses = self._run_all(
            [lambda work=work: self.process_document(work) for work in work_items], should_continue, heartbeat
        )

        ready = self.retry_queue.get_ready_for_retry() if should_continue() else []
        if ready:
            logger.info(f"[scan] processing {len(ready)} document(s) from retry queue")
        retry_statuses = self._run_all(
            [lambda entry=entry: self.process_by_id(entry.document_id, from_retry_queue=True) for entry in ready],
            should_continue,
            heartbeat,
        )
        result.retries_processed = len(retry_statuses)

        for status in statuses + retry_statuses:
            if status == S.COMPLETED:
                result.documents_completed += 1
            elif status == S.FAILED:
                result.documents_failed += 1
            elif status == S.SKIPPED:
                result.documents_skipped += 1

        logger.info(
            f"[scan] pass complete: found={result.documents_found} queued={result.documents_queued} "
            f"completed={result.documents_completed} failed={result.documents_failed} "
            f"skipped={result.documents_skipped} retries={result.retries_processed}"
        )
        return result
