import threading
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

import schedule
from loguru import logger

from ..config import Config
from ..models import ProcessingStatus, ScanResult
from ..utils import Clock, utcnow


class ScanCycleDriver:
    """Polling loop that decides when to drain webhooks, clean up and scan.

    One tick runs to completion before the next begins, and the loop has a
    single sleep point: `tick()` returns how long to wait.
    Cleanup is a `schedule` job and follows wall-clock time.
    """

    def __init__(
        self,
        processor,
        state,
        lock,
        webhook_queue,
        clock: Clock = utcnow,
        sleep: Optional[Callable[[float], object]] = None,
        config_errors: Optional[List[str]] = None,
        poll_interval: Optional[float] = None,
        scan_interval: Optional[float] = None,
        error_cooldown: Optional[float] = None,
        cleanup_interval: Optional[int] = None,
    ):
        self.processor = processor
        self.state = state
        self.lock = lock
        self.webhook_queue = webhook_queue
        self.clock = clock
        self.stop_event = threading.Event()
        self.sleep = sleep or self.stop_event.wait
        self.config_errors = Config.validate() if config_errors is None else config_errors
        self.poll_interval = poll_interval if poll_interval is not None else Config.POLL_INTERVAL
        self.scan_interval = timedelta(seconds=scan_interval if scan_interval is not None else Config.SCAN_INTERVAL)
        self.error_cooldown = error_cooldown if error_cooldown is not None else Config.ERROR_COOLDOWN

        self.scheduler = schedule.Scheduler()
        self.scheduler.every(cleanup_interval or Config.CLEANUP_INTERVAL).minutes.do(self.run_cleanup)

    def request_stop(self):
        """Request a graceful shutdown; the document in hand is finished first."""
        self.stop_event.set()

    def should_continue(self) -> bool:
        return not self.stop_event.is_set() and not self.state.is_paused()

    def scan_due(self) -> Tuple[bool, str]:
        """Whether a scan should run now, and why. A manual request is consumed here."""
        if self.state.consume_scan_request():
            return True, "manual"
        last_scan_at = self.state.last_scan_at()
        if last_scan_at is None:
            return True, "initial"
        if self.clock() - last_scan_at >= self.scan_interval:
            return True, "scheduled"
        return False, "not due"

    def drain_webhooks(self) -> int:
        """Process every pending webhook document under the scan lock."""
        if not self.webhook_queue.has_pending():
            return 0

        with self.lock.held() as acquired:
            if not acquired:
                logger.info("[webhook] lock busy; pending webhooks wait for the next tick")
                return 0

            document_ids = self.webhook_queue.consume_pending()
            for doc_id in document_ids:
                try:
                    status = self.processor.process_by_id(doc_id)
                except Exception:
                    self.webhook_queue.mark_failed(doc_id)
                    raise
                if status == ProcessingStatus.FAILED:
                    self.webhook_queue.mark_failed(doc_id)
                else:
                    self.webhook_queue.mark_completed(doc_id)
                self.lock.refresh()
            return len(document_ids)

    def run_cleanup(self):
        """Purge old webhook entries and requeue orphaned claims; never fatal."""
        try:
            self.webhook_queue.cleanup()
            with self.lock.held() as acquired:
                # while we hold the lock nobody is draining, so any claimed entry is an orphan
                if acquired:
                    self.webhook_queue.recover_orphans(timedelta(0))
        except Exception as exc:
            logger.warning(f"[webhook] cleanup failed: {exc}")

    def run_scan(self, reason: str) -> Optional[ScanResult]:
        with self.lock.held() as acquired:
            if not acquired:
                logger.info("[scan] another process is scanning; skipping this tick")
                return None
            logger.info(f"[scan] starting {reason} scan")
            result = self.processor.run_automation(
                should_continue=self.should_continue, heartbeat=self.lock.refresh
            )
            self.state.record_scan(result)
            return result

    def tick(self) -> float:
        """Run one iteration of the loop and return the delay before the next one."""
        if self.config_errors:
            return self.poll_interval

        try:
            if self.state.is_paused():
                logger.debug("[scan] worker paused; waiting for resume")
                return self.poll_interval

            # webhook documents always go before scheduled work
            self.drain_webhooks()
            self.scheduler.run_pending()

            due, reason = self.scan_due()
            if due:
                self.run_scan(reason)
        except Exception as exc:
            logger.exception(f"[scan] tick failed, cooling down for {self.error_cooldown:.0f}s: {exc}")
            return self.error_cooldown

        return self.poll_interval

    def run(self):
        """Loop until a stop is requested; the scan lock is released on the way out."""
        logger.info(
            f"[scan] driver started (poll={self.poll_interval:.0f}s, "
            f"scan every {self.scan_interval.total_seconds():.0f}s, holder={self.lock.holder_id})"
        )
        if self.config_errors:
            for error in self.config_errors:
                logger.error(f"[config] {error}")
            logger.error("[scan] configuration invalid; scans are disabled until it is fixed and the worker restarted")
        else:
            self.run_cleanup()

        try:
            while not self.stop_event.is_set():
                delay = self.tick()
                if self.stop_event.is_set():
                    break
                self.sleep(delay)
        finally:
            self.lock.release()
            logger.info("[scan] driver stopped")
