"""Exception types shared across the worker."""

from typing import Optional


class WorkerError(Exception):
    """Base exception for all receipt worker errors."""


class ConfigurationError(WorkerError):
    """Raised when required configuration is missing or invalid."""


class DocumentStoreError(WorkerError):
    """Raised when the document store answers with a non-2xx status or is unreachable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(WorkerError):
    """Raised when the model call fails or its output does not match the schema."""


class InvalidTransitionError(WorkerError):
    """Raised when a processing log row is moved to a status it cannot reach."""


class WebhookRejected(WorkerError):
    """Raised for unauthorized (401) or malformed (400) webhook calls."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
