import pytest

from receipt_worker.src.queues import WebhookQueue
from receipt_worker.src.services import WebhookIngress, WebhookRejected, WorkerStateRepository


@pytest.fixture
def parts(session_factory, clock):
    queue = WebhookQueue(session_factory, clock)
    state = WorkerStateRepository(session_factory, clock)
    return queue, state


def test_notification_is_queued_and_scan_requested(parts):
    queue, state = parts
    ingress = WebhookIngress(queue, state, secret="s3cret")

    response = ingress.handle(b'{"document_id": "17"}', authorization="Bearer s3cret")

    assert response == {"status": "queued", "documentId": 17}
    assert queue.get_recent()[0].payload == '{"document_id": "17"}'
    assert state.get_status().scan_requested is True


def test_repeated_notification_does_not_duplicate(parts):
    queue, state = parts
    ingress = WebhookIngress(queue, state, secret="")
    ingress.handle({"documentId": 17})
    ingress.handle({"documentId": 17})
    assert queue.get_stats().pending == 1


@pytest.mark.parametrize("authorization", [None, "Bearer wrong", "s3cret"])
def test_wrong_secret_is_rejected(parts, authorization):
    queue, state = parts
    ingress = WebhookIngress(queue, state, secret="s3cret")

    with pytest.raises(WebhookRejected) as excinfo:
        ingress.handle({"document_id": 1}, authorization=authorization)
    assert excinfo.value.status_code == 401
    assert queue.get_stats().total == 0


@pytest.mark.parametrize("body", ["not json", "[1, 2]", {"document_id": "abc"}, {"document_id": 0}, {}])
def test_malformed_body_is_rejected(parts, body):
    queue, state = parts
    with pytest.raises(WebhookRejected) as excinfo:
        WebhookIngress(queue, state, secret="").handle(body)
    assert excinfo.value.status_code == 400
