"""Durable work queues: webhook-triggered documents and failed-document retries."""

from .retry_queue import DatabaseRetryBackend, JsonFileRetryBackend, RetryQueue, build_retry_queue
from .webhook_queue import WebhookQueue

__all__ = [
    'DatabaseRetryBackend',
    'JsonFileRetryBackend',
    'RetryQueue',
    'WebhookQueue',
    'build_retry_queue'
]
