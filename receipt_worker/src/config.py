import os
from pathlib import Path
from typing import List, Optional

from .errors import ConfigurationError


def _env_bool(name: str, default: str = "0") -> bool:
    return str(os.getenv(name, default)).lower() in {"1", "true", "yes"}


class Config:
    """Centralized configuration management for the receipt worker."""

    # Paperless Configuration
    PAPERLESS_URL: str = os.getenv("PAPERLESS_URL", "http://paperless:8000")
    PAPERLESS_TOKEN: Optional[str] = os.getenv("PAPERLESS_TOKEN")
    PAPERLESS_TOKEN_FILE: Optional[str] = os.getenv("PAPERLESS_TOKEN_FILE")
    PAPERLESS_TIMEOUT: float = float(os.getenv("PAPERLESS_TIMEOUT", "30"))

    # Ollama Configuration
    OLLAMA_URL: str = os.getenv("OLLAMA_URL", "http://ollama:11434")
    OLLAMA_MODEL: str = os.getenv("OLLAMA_MODEL", "qwen2.5vl:7b")
    OLLAMA_TIMEOUT: float = float(os.getenv("OLLAMA_TIMEOUT", "180"))

    # Shared store
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:////data/receipt_worker.db")
    RETRY_QUEUE_BACKEND: str = os.getenv("RETRY_QUEUE_BACKEND", "database")
    RETRY_QUEUE_PATH: Path = Path(os.getenv("RETRY_QUEUE_PATH", "/data/retry_queue.json"))

    # Scheduling (seconds unless noted)
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "5"))
    SCAN_INTERVAL: float = float(os.getenv("SCAN_INTERVAL", "60"))
    ERROR_COOLDOWN: float = float(os.getenv("ERROR_COOLDOWN", "60"))
    LOCK_TTL: float = float(os.getenv("LOCK_TTL", "900"))
    CLEANUP_INTERVAL: int = int(os.getenv("CLEANUP_INTERVAL", "60"))  # minutes
    WEBHOOK_RETENTION_HOURS: int = int(os.getenv("WEBHOOK_RETENTION_HOURS", "24"))

    # Processing Configuration
    MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))
    RETRY_STRATEGY: str = os.getenv("RETRY_STRATEGY", "partial")
    UPDATE_CONTENT: bool = _env_bool("UPDATE_CONTENT", "1")
    EXTRACTION_WORKERS: int = int(os.getenv("EXTRACTION_WORKERS", "1"))

    # Default workflow seeded into an empty registry
    DEFAULT_TRIGGER_TAG: str = os.getenv("RECEIPT_TAG", "receipt")
    PROCESSED_TAG: str = os.getenv("PROCESSED_TAG", "receipt-processed")
    FAILED_TAG: str = os.getenv("FAILED_TAG", "receipt-failed")
    SKIPPED_TAG: str = os.getenv("SKIPPED_TAG", "receipt-skipped")

    # Webhooks
    WEBHOOK_SECRET: Optional[str] = os.getenv("WEBHOOK_SECRET")

    # Startup
    BOOTSTRAP_WAIT: bool = _env_bool("BOOTSTRAP_WAIT", "0")

    # Logging Controls
    LOG_FILE: str = os.getenv("LOG_FILE", "/data/receipt_worker.log")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_LLM_OUTPUT_MAX: int = int(os.getenv("LOG_LLM_OUTPUT_MAX", "2000"))
    LOG_ERROR_MAX: int = int(os.getenv("LOG_ERROR_MAX", "1000"))

    @classmethod
    def validate(cls) -> List[str]:
        """Return a list of configuration problems (empty when usable)."""
        errors: List[str] = []
        if not cls.PAPERLESS_URL:
            errors.append("PAPERLESS_URL is not set")
        if not cls.PAPERLESS_TOKEN and not cls.PAPERLESS_TOKEN_FILE:
            errors.append("Neither PAPERLESS_TOKEN nor PAPERLESS_TOKEN_FILE is specified")
        if not cls.OLLAMA_URL or not cls.OLLAMA_MODEL:
            errors.append("OLLAMA_URL and OLLAMA_MODEL must both be set")
        if cls.RETRY_QUEUE_BACKEND not in {"database", "file"}:
            errors.append(f"RETRY_QUEUE_BACKEND must be 'database' or 'file', got {cls.RETRY_QUEUE_BACKEND!r}")
        if cls.RETRY_STRATEGY not in {"partial", "full"}:
            errors.append(f"RETRY_STRATEGY must be 'partial' or 'full', got {cls.RETRY_STRATEGY!r}")
        if cls.MAX_RETRIES < 1:
            errors.append("MAX_RETRIES must be at least 1")
        for name in ("POLL_INTERVAL", "SCAN_INTERVAL", "ERROR_COOLDOWN", "LOCK_TTL"):
            if getattr(cls, name) <= 0:
                errors.append(f"{name} must be positive")
        return errors

    @classmethod
    def require_valid(cls):
        """Raise ConfigurationError listing every problem found by validate()."""
        if errors := cls.validate():
            raise ConfigurationError("; ".join(errors))
