from typing import Any

from .json_utils import safe_dumps


class TextUtils:
    """Utility class for text processing operations."""

    @staticmethod
    def truncate_text(text: Any, limit: int) -> str:
        """Truncate text to specified limit with indicator."""
        try:
            s = text if isinstance(text, str) else safe_dumps(text)
        except TypeError:
            s = str(text)
        if limit <= 0 or len(s) <= limit:
            return s
        tail = len(s) - limit
        return f"{s[:limit]}... [truncated {tail} chars]"

    @staticmethod
    def error_message(exc: BaseException, limit: int = 1000) -> str:
        """Render an exception as a single bounded line for logs and queue rows."""
        message = str(exc) or exc.__class__.__name__
        return TextUtils.truncate_text(" ".join(message.split()), limit)

    @staticmethod
    def format_delay(seconds: float) -> str:
        """Format a backoff delay for logging (e.g. '5min', '30s')."""
        if seconds >= 60:
            return f"{round(seconds / 60)}min"
        return f"{round(seconds)}s"
