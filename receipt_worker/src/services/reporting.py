from typing import Any, Dict

from loguru import logger

from ..processing import ProcessingLog
from ..queues import RetryQueue, WebhookQueue


class StatusReporter:
    """Read-only snapshot of worker state for the dashboard and the CLI."""

    def __init__(self, state, webhook_queue: WebhookQueue, retry_queue: RetryQueue, processing_log: ProcessingLog):
        self.state = state
        self.webhook_queue = webhook_queue
        self.retry_queue = retry_queue
        self.processing_log = processing_log

    def snapshot(self, limit: int = 20) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {"worker": self.state.get_status().model_dump(mode="json")}
        try:
            snapshot["webhooks"] = self.webhook_queue.get_stats().model_dump()
            snapshot["recent_webhooks"] = [entry.model_dump(mode="json") for entry in self.webhook_queue.get_recent(limit)]
            snapshot["retry_queue"] = {
                "size": self.retry_queue.size(),
                "ready": len(self.retry_queue.get_ready_for_retry()),
                "entries": [entry.model_dump(mode="json") for entry in self.retry_queue.get_all()],
            }
            snapshot["recent_documents"] = [
                entry.model_dump(mode="json", exclude={"receipt_data"})
                for entry in self.processing_log.get_recent(limit)
            ]
        except Exception as exc:
            logger.warning(f"[state] partial status snapshot: {exc}")
            snapshot["error"] = str(exc)
        return snapshot
