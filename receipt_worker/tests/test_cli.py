from receipt_worker.src.cli import run
from receipt_worker.src.queues import WebhookQueue
from receipt_worker.src.services import WorkerStateRepository
from receipt_worker.src.utils.json_utils import safe_loads


def test_pause_resume_and_scan(session_factory):
    state = WorkerStateRepository(session_factory)

    assert run(["pause", "maintenance"], session_factory=session_factory) == 0
    assert state.get_status().pause_reason == "maintenance"

    run(["resume"], session_factory=session_factory)
    run(["scan"], session_factory=session_factory)
    status = state.get_status()
    assert status.is_paused is False
    assert status.scan_requested is True


def test_enqueue_and_status(session_factory, capsys):
    run(["enqueue", "31"], session_factory=session_factory)
    assert WebhookQueue(session_factory).get_stats().pending == 1
    capsys.readouterr()

    run(["status", "--limit", "5"], session_factory=session_factory)
    snapshot = safe_loads(capsys.readouterr().out)

    assert snapshot["worker"]["scan_requested"] is True
    assert snapshot["webhooks"]["pending"] == 1
    assert snapshot["recent_webhooks"][0]["document_id"] == 31
    assert snapshot["retry_queue"]["size"] == 0


def test_retry_commands(session_factory, capsys):
    run(["retry-all"], session_factory=session_factory)
    run(["clear-retries"], session_factory=session_factory)
    out = capsys.readouterr().out
    assert "0 document(s) due for retry" in out
    assert "0 retry entries removed" in out
