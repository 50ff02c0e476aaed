"""Processing modules: workflows, the per-document pipeline and its audit log."""

from .document_processor import DocumentProcessor
from .processing_log import ProcessingLog
from .workflows import WorkflowRegistry

__all__ = [
    'DocumentProcessor',
    'ProcessingLog',
    'WorkflowRegistry'
]
