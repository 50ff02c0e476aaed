"""Utility modules for JSON handling, text formatting and time."""

from .clock import Clock, utcnow
from .text_utils import TextUtils

__all__ = ["Clock", "TextUtils", "utcnow"]
