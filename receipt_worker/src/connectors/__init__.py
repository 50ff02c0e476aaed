"""Connector modules for external service integrations."""

from .ollama_extractor import OllamaExtractor
from .paperless_connector import PaperlessConnector

__all__ = [
    'OllamaExtractor',
    'PaperlessConnector'
]
