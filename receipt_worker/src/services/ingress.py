"""Inbound webhook handling for the API process.

Paperless calls the webhook when a document is added or updated and gives up
after a short timeout, so the handler only queues the document and raises the
scan flag; the worker picks it up on its next tick.
"""

import hmac
from typing import Any, Dict, Optional, Union

from loguru import logger

from ..config import Config
from ..errors import WebhookRejected
from ..queues import WebhookQueue
from ..utils.json_utils import safe_dumps, safe_loads


def parse_document_id(payload: Dict[str, Any]) -> int:
    raw = payload.get("document_id", payload.get("documentId"))
    try:
        document_id = int(raw)
    except (TypeError, ValueError):
        raise WebhookRejected(f"Missing or invalid document_id: {raw!r}") from None
    if document_id <= 0:
        raise WebhookRejected(f"Missing or invalid document_id: {raw!r}")
    return document_id


class WebhookIngress:
    def __init__(self, webhook_queue: WebhookQueue, state, secret: Optional[str] = None):
        self.webhook_queue = webhook_queue
        self.state = state
        self.secret = secret if secret is not None else Config.WEBHOOK_SECRET

    def authorize(self, authorization: Optional[str]):
        if not self.secret:
            return
        expected = f"Bearer {self.secret}"
        if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
            logger.warning("[webhook] rejected call with missing or wrong secret")
            raise WebhookRejected("Unauthorized", status_code=401)

    def handle(self, body: Union[Dict[str, Any], str, bytes], authorization: Optional[str] = None) -> Dict[str, Any]:
        """Queue the notified document and request a scan; never processes inline."""
        self.authorize(authorization)

        if isinstance(body, (str, bytes)):
            try:
                payload = safe_loads(body)
            except ValueError:
                raise WebhookRejected("Body is not valid JSON") from None
            raw_payload = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
        else:
            payload = body
            raw_payload = safe_dumps(body)
        if not isinstance(payload, dict):
            raise WebhookRejected("Body must be a JSON object")

        document_id = parse_document_id(payload)
        logger.info(f"[webhook] received notification for document {document_id}")
        self.webhook_queue.enqueue(document_id, raw_payload)
        self.state.request_scan()
        return {"status": "queued", "documentId": document_id}
