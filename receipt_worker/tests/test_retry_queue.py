from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from receipt_worker.src.queues import DatabaseRetryBackend, JsonFileRetryBackend, RetryQueue
from receipt_worker.src.store import session_scope
from receipt_worker.src.store.tables import RetryQueueRow


@pytest.fixture
def queue(session_factory, clock):
    return RetryQueue(DatabaseRetryBackend(session_factory), max_retries=3, clock=clock)


@pytest.mark.parametrize(
    "attempts, seconds",
    [(1, 60), (2, 300), (3, 900), (4, 900), (10, 900)],
)
def test_backoff_tiers_clamp_at_last_tier(attempts, seconds):
    assert RetryQueue.calculate_backoff(attempts) == timedelta(seconds=seconds)


def test_next_retry_follows_backoff_table(queue, clock):
    start = clock()
    queue.add(7, "model timeout")
    entry = queue.get(7)
    assert entry.attempts == 1
    assert entry.next_retry_at == start + timedelta(seconds=60)
    assert entry.last_error == "model timeout"

    clock.advance(60)
    queue.add(7, "model timeout again")
    entry = queue.get(7)
    assert entry.attempts == 2
    assert entry.next_retry_at == clock() + timedelta(seconds=300)


def test_ready_for_retry_only_returns_due_entries(queue, clock):
    queue.add(1, "a")
    clock.advance(30)
    queue.add(2, "b")

    assert queue.get_ready_for_retry() == []
    clock.advance(30)
    assert [entry.document_id for entry in queue.get_ready_for_retry()] == [1]
    clock.advance(30)
    assert [entry.document_id for entry in queue.get_ready_for_retry()] == [1, 2]


def test_give_up_after_max_retries(queue):
    for _ in range(2):
        queue.add(9, "boom")
        assert queue.should_give_up(9) is False

    queue.add(9, "boom")
    assert queue.should_give_up(9) is True

    queue.remove(9)
    assert queue.has(9) is False
    assert queue.get_attempts(9) == 0


def test_max_retries_is_independent_of_backoff_tiers(session_factory, clock):
    queue = RetryQueue(DatabaseRetryBackend(session_factory), max_retries=5, clock=clock)
    for _ in range(4):
        queue.add(3, "boom")

    assert queue.should_give_up(3) is False
    assert queue.get(3).next_retry_at == clock() + timedelta(seconds=900)


def test_retry_all_keeps_attempts(queue, clock):
    queue.add(1, "a")
    queue.add(1, "a")
    queue.add(2, "b")

    assert queue.retry_all() == 2
    ready = queue.get_ready_for_retry()
    assert {entry.document_id: entry.attempts for entry in ready} == {1: 2, 2: 1}


def test_clear_empties_queue(queue):
    queue.add(1, "a")
    queue.add(2, "b")
    assert queue.clear() == 2
    assert queue.size() == 0


def test_long_errors_are_truncated(queue):
    queue.add(1, "x" * 5000)
    assert len(queue.get(1).last_error) < 5000


def test_database_backend_survives_restart(session_factory, second_session_factory, clock):
    RetryQueue(DatabaseRetryBackend(session_factory), clock=clock).add(7, "boom")

    reloaded = RetryQueue(DatabaseRetryBackend(second_session_factory), clock=clock)
    entry = reloaded.get(7)
    assert entry.attempts == 1
    assert entry.next_retry_at == clock() + timedelta(seconds=60)


def test_file_backend_survives_restart(tmp_path, clock):
    path = tmp_path / "retry_queue.json"
    first = RetryQueue(JsonFileRetryBackend(path), clock=clock)
    first.add(7, "boom")
    first.add(8, "bang")

    reloaded = RetryQueue(JsonFileRetryBackend(path), clock=clock)
    assert reloaded.get_all() == first.get_all()
    assert list(tmp_path.glob("*.tmp")) == []


def test_corrupt_file_loads_as_empty_queue(tmp_path, clock):
    path = tmp_path / "retry_queue.json"
    path.write_text("{this is not json", encoding="utf-8")

    queue = RetryQueue(JsonFileRetryBackend(path), clock=clock)
    assert queue.size() == 0

    queue.add(1, "boom")
    assert queue.size() == 1


def test_file_with_invalid_entries_loads_as_empty_queue(tmp_path, clock):
    path = tmp_path / "retry_queue.json"
    path.write_text('[{"document_id": 1, "attempts": 0}]', encoding="utf-8")

    assert RetryQueue(JsonFileRetryBackend(path), clock=clock).get_all() == []


class FlakySessionFactory:
    """Session factory whose first calls fail the way a busy SQLite file does."""

    def __init__(self, factory, failures=1):
        self.factory = factory
        self.failures = failures

    def __call__(self):
        if self.failures:
            self.failures -= 1
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return self.factory()


def test_store_errors_propagate_and_keep_entries(queue, session_factory, clock):
    for document_id in (1, 2, 3):
        queue.add(document_id, "boom")

    flaky = RetryQueue(DatabaseRetryBackend(FlakySessionFactory(session_factory)), clock=clock)
    with pytest.raises(OperationalError):
        flaky.size()

    flaky.add(4, "boom")
    assert [entry.document_id for entry in queue.get_all()] == [1, 2, 3, 4]


def test_unreadable_row_is_ignored(queue, session_factory, clock):
    queue.add(1, "boom")
    with session_scope(session_factory) as session:
        session.add(RetryQueueRow(document_id=2, attempts=0, last_error="", next_retry_at=clock()))

    assert [entry.document_id for entry in queue.get_all()] == [1]


def test_concurrent_adds_are_not_lost(queue):
    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda document_id: queue.add(document_id, "boom"), list(range(1, 21)) * 2))

    entries = queue.get_all()
    assert len(entries) == 20
    assert {entry.attempts for entry in entries} == {2}


def test_add_and_remove_from_two_processes(queue, second_session_factory, clock):
    other = RetryQueue(DatabaseRetryBackend(second_session_factory), clock=clock)
    queue.add(1, "a")
    other.add(2, "b")
    other.add(1, "a")
    queue.remove(2)

    assert {entry.document_id: entry.attempts for entry in queue.get_all()} == {1: 2}
    assert other.retry_all() == 1
    assert queue.get(1).next_retry_at == clock()


def test_file_backend_concurrent_adds_are_not_lost(tmp_path, clock):
    path = tmp_path / "retry_queue.json"
    queue = RetryQueue(JsonFileRetryBackend(path), clock=clock)

    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda document_id: queue.add(document_id, "boom"), range(1, 21)))

    assert queue.size() == 20
    assert list(tmp_path.glob("*.tmp")) == []
