"""Primary source package for the Paperless receipt worker.

Test imports use the full dotted path (e.g. 'receipt_worker.src.queues');
intra-package imports use relative form (e.g. 'from ..config import Config').
"""

__all__ = []
