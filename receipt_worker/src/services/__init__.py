"""Services modules for coordination, scheduling, bootstrap and ingress."""

from .bootstrap import ServiceBootstrapper
from .ingress import WebhookIngress, WebhookRejected
from .lock import LockCoordinator, default_holder_id
from .reporting import StatusReporter
from .scheduler import ScanCycleDriver
from .worker_state import WorkerStateRepository

__all__ = [
    'LockCoordinator',
    'ScanCycleDriver',
    'ServiceBootstrapper',
    'StatusReporter',
    'WebhookIngress',
    'WebhookRejected',
    'WorkerStateRepository',
    'default_holder_id'
]
