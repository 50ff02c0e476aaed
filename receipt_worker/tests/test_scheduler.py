from datetime import datetime, timedelta

import pytest
from conftest import MockExtractor, MockPaperless

from receipt_worker.src.models import ProcessingStatus as S
from receipt_worker.src.models import ScanResult, WebhookStatus
from receipt_worker.src.processing import DocumentProcessor, ProcessingLog, WorkflowRegistry
from receipt_worker.src.queues import DatabaseRetryBackend, RetryQueue, WebhookQueue
from receipt_worker.src.services import LockCoordinator, ScanCycleDriver, WebhookIngress, WorkerStateRepository

RECEIPT_TAG = 1


class Harness:
    def __init__(self, session_factory, clock, config_errors=None):
        self.clock = clock
        self.connector = MockPaperless(
            documents={
                5: {"id": 5, "title": "old-scan.pdf", "tags": [RECEIPT_TAG]},
                99: {"id": 99, "title": "webhook.pdf", "tags": [RECEIPT_TAG]},
                42: {"id": 42, "title": "letter.pdf", "tags": []},
            },
            tags={RECEIPT_TAG: "receipt"},
        )
        self.extractor = MockExtractor()
        self.state = WorkerStateRepository(session_factory, clock)
        self.state.initialize()
        self.webhooks = WebhookQueue(session_factory, clock)
        self.retry_queue = RetryQueue(DatabaseRetryBackend(session_factory), max_retries=3, clock=clock)
        self.log = ProcessingLog(session_factory, clock)
        workflows = WorkflowRegistry(session_factory)
        workflows.seed_default()
        self.processor = DocumentProcessor(
            session_factory, self.connector, self.extractor, self.retry_queue,
            processing_log=self.log, workflows=workflows, clock=clock, workers=1,
        )
        self.lock = LockCoordinator(session_factory, holder_id="worker", ttl_seconds=900, clock=clock)
        self.ingress = WebhookIngress(self.webhooks, self.state, secret="")
        self.sleeps = []
        self.driver = ScanCycleDriver(
            self.processor, self.state, self.lock, self.webhooks,
            clock=clock, sleep=self.sleeps.append, config_errors=config_errors or [],
            poll_interval=5, scan_interval=60, error_cooldown=60, cleanup_interval=60,
        )


@pytest.fixture
def harness(session_factory, clock):
    return Harness(session_factory, clock)


def test_unmatched_webhook_document_is_skipped_without_retry(harness):
    harness.ingress.handle({"document_id": 42})

    assert harness.driver.tick() == 5

    assert harness.log.latest(42).status == S.SKIPPED
    assert harness.retry_queue.has(42) is False
    assert harness.webhooks.get_stats().completed == 1


def test_webhook_is_processed_before_due_scan(harness):
    harness.state.request_scan()
    harness.ingress.handle('{"document_id": 99}')

    harness.driver.tick()

    assert harness.connector.updated_ids == [99, 5]
    assert harness.webhooks.get_recent()[0].status == WebhookStatus.COMPLETED
    assert harness.state.get_status().last_scan_result.documents_completed == 1


def test_paused_worker_does_no_processing(harness):
    harness.state.pause("maintenance")
    harness.ingress.handle({"document_id": 99})
    harness.state.request_scan()

    for _ in range(3):
        assert harness.driver.tick() == 5
        harness.clock.advance(120)

    assert harness.extractor.calls == 0
    assert harness.connector.updated_ids == []
    assert harness.webhooks.has_pending() is True
    assert harness.log.latest(99) is None
    assert harness.state.get_status().scan_requested is True

    harness.state.resume()
    harness.driver.tick()

    assert harness.log.latest(99).status == S.COMPLETED
    assert harness.log.latest(5).status == S.COMPLETED


def test_scan_runs_on_interval_and_on_request(harness):
    harness.driver.tick()
    assert harness.driver.scan_due() == (False, "not due")

    harness.clock.advance(30)
    harness.state.request_scan()
    assert harness.driver.scan_due() == (True, "manual")
    assert harness.driver.scan_due() == (False, "not due")

    harness.clock.advance(30)
    assert harness.driver.scan_due() == (True, "scheduled")


def test_scan_skipped_while_other_process_holds_lock(harness, second_session_factory):
    other = LockCoordinator(second_session_factory, holder_id="api", clock=harness.clock)
    assert other.acquire()

    harness.ingress.handle({"document_id": 99})
    assert harness.driver.tick() == 5

    assert harness.extractor.calls == 0
    assert harness.webhooks.has_pending() is True
    assert harness.state.get_status().last_scan_at is None
    assert harness.lock.holder() == "api"


def test_failing_scan_trips_circuit_breaker_and_releases_lock(harness):
    def explode(**kwargs):
        raise RuntimeError("store unreachable")

    harness.processor.run_automation = explode

    assert harness.driver.tick() == 60
    assert harness.lock.holder() is None


def test_invalid_configuration_blocks_work_but_not_control(session_factory, clock):
    harness = Harness(session_factory, clock, config_errors=["Neither PAPERLESS_TOKEN nor PAPERLESS_TOKEN_FILE is specified"])
    harness.ingress.handle({"document_id": 99})

    assert harness.driver.tick() == 5
    assert harness.extractor.calls == 0
    assert harness.webhooks.has_pending() is True

    harness.state.pause("config")
    assert harness.state.get_status().is_paused is True
    harness.state.resume()
    assert harness.state.is_paused() is False


def test_run_stops_gracefully_and_releases_lock(harness):
    def sleep_then_stop(delay):
        harness.sleeps.append(delay)
        harness.driver.request_stop()

    harness.driver.sleep = sleep_then_stop
    harness.driver.run()

    assert harness.sleeps == [5]
    assert harness.lock.holder() is None
    assert isinstance(harness.state.get_status().last_scan_result, ScanResult)


def test_cleanup_purges_and_recovers_orphans(harness):
    harness.webhooks.enqueue(1)
    harness.webhooks.enqueue(2)
    harness.webhooks.consume_pending()
    harness.webhooks.mark_completed(1)
    harness.clock.advance(25 * 3600)

    harness.driver.run_cleanup()

    stats = harness.webhooks.get_stats()
    assert (stats.completed, stats.pending, stats.processing) == (0, 1, 0)
    assert harness.lock.holder() is None


def test_cleanup_runs_at_most_once_per_interval(harness):
    calls = []
    purge = harness.webhooks.cleanup

    def counting_cleanup(*args, **kwargs):
        calls.append(1)
        return purge(*args, **kwargs)

    harness.webhooks.cleanup = counting_cleanup
    (job,) = harness.driver.scheduler.jobs
    assert (job.interval, job.unit) == (60, "minutes")

    for _ in range(3):
        harness.driver.tick()
    assert calls == []

    # the job follows wall-clock time; move its due time into the past
    job.next_run = datetime.now() - timedelta(seconds=1)
    for _ in range(3):
        harness.driver.tick()

    assert calls == [1]
    assert job.next_run - datetime.now() > timedelta(minutes=59)
