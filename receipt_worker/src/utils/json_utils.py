"""JSON helpers built on orjson.

- safe_loads / safe_dumps: fast (de)serialization for persisted state and
  model payloads.
- extract_first_json: pull the first JSON object or array out of model
  output that may be wrapped in code fences or surrounded by prose.
"""

from __future__ import annotations

import re
from typing import Any, Optional

import orjson

_FENCE_RE = re.compile(r"```[a-zA-Z0-9]*\s*\n(.*?)```", re.DOTALL)
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})


def safe_loads(data: str | bytes) -> Any:
    """Parse JSON text or bytes; raises ValueError on malformed input."""
    return orjson.loads(data)


def safe_dumps(obj: Any, *, indent: bool = False) -> str:
    """Serialize to a JSON string; datetimes become ISO 8601 (RFC 3339)."""
    option = orjson.OPT_INDENT_2 if indent else 0
    return orjson.dumps(obj, option=option | orjson.OPT_NON_STR_KEYS).decode("utf-8")


def _unfence(text: str) -> str:
    for block in _FENCE_RE.findall(text):
        stripped = block.strip()
        if stripped[:1] in ("{", "["):
            return stripped
    return text


def find_json_substring(text: str) -> Optional[str]:
    """Return the first balanced {...} or [...] substring, honouring string literals."""
    depth = 0
    start: Optional[int] = None
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            if depth == 0:
                start = i
            depth += 1
        elif ch in "]}" and depth:
            depth -= 1
            if depth == 0 and start is not None:
                return text[start : i + 1]
    return None


def extract_first_json(text: str) -> Optional[Any]:
    """Extract and parse the first JSON value from model output, or None."""
    if not text:
        return None
    candidate = _unfence(text.translate(_SMART_QUOTES)).strip()
    if candidate[:1] not in ("{", "["):
        candidate = find_json_substring(candidate) or ""
    if not candidate:
        return None
    try:
        return safe_loads(candidate)
    except ValueError:
        return None


__all__ = ["safe_loads", "safe_dumps", "extract_first_json", "find_json_substring"]
