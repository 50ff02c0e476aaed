"""Operator commands against the shared store (pause, resume, status, ...).

They only touch the store, so they work while the worker is paused or while
its configuration is invalid.
"""

import argparse
import sys
from typing import List, Optional

from loguru import logger

from .config import Config
from .main import open_store
from .processing import ProcessingLog
from .queues import WebhookQueue, build_retry_queue
from .services import StatusReporter, WorkerStateRepository
from .utils.json_utils import safe_dumps


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="receipt-worker-ctl", description="Control the receipt worker")
    sub = parser.add_subparsers(dest="command", required=True)

    pause = sub.add_parser("pause", help="Stop all processing until resumed")
    pause.add_argument("reason", nargs="?", default=None)
    sub.add_parser("resume", help="Resume processing")
    status = sub.add_parser("status", help="Print worker, queue and recent document status as JSON")
    status.add_argument("--limit", type=int, default=20)
    sub.add_parser("scan", help="Request a scan on the worker's next tick")
    enqueue = sub.add_parser("enqueue", help="Queue a document as if a webhook had arrived")
    enqueue.add_argument("document_id", type=int)
    sub.add_parser("retry-all", help="Make every retry queue entry due now")
    sub.add_parser("clear-retries", help="Drop every retry queue entry")
    return parser


def run(argv: Optional[List[str]] = None, session_factory=None) -> int:
    args = build_parser().parse_args(argv)
    session_factory = session_factory or open_store()
    state = WorkerStateRepository(session_factory)
    webhook_queue = WebhookQueue(session_factory)
    retry_queue = build_retry_queue(session_factory)

    if args.command == "pause":
        state.pause(args.reason)
    elif args.command == "resume":
        state.resume()
    elif args.command == "scan":
        state.request_scan()
    elif args.command == "enqueue":
        webhook_queue.enqueue(args.document_id, safe_dumps({"document_id": args.document_id, "source": "cli"}))
        state.request_scan()
    elif args.command == "retry-all":
        print(f"{retry_queue.retry_all()} document(s) due for retry")
    elif args.command == "clear-retries":
        print(f"{retry_queue.clear()} retry entries removed")
    elif args.command == "status":
        reporter = StatusReporter(state, webhook_queue, retry_queue, ProcessingLog(session_factory))
        print(safe_dumps(reporter.snapshot(args.limit), indent=True))
    return 0


def main():
    logger.remove()
    logger.add(sys.stderr, level=Config.LOG_LEVEL)
    sys.exit(run())


if __name__ == "__main__":
    main()
