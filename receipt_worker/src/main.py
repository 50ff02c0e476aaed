import contextlib
import signal
import sys
from pathlib import Path

from loguru import logger

from .config import Config
from .connectors import OllamaExtractor, PaperlessConnector
from .processing import DocumentProcessor, ProcessingLog, WorkflowRegistry
from .queues import WebhookQueue, build_retry_queue
from .services import LockCoordinator, ScanCycleDriver, ServiceBootstrapper, WorkerStateRepository, default_holder_id
from .store import build_engine, init_db, make_session_factory


def setup_logging():
    """Configure application logging."""
    logger.remove()
    logger.add(sys.stderr, level=Config.LOG_LEVEL)
    with contextlib.suppress(OSError):
        Path(Config.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)

    _ = logger.add(
        Config.LOG_FILE,
        level=Config.LOG_LEVEL,
        rotation="10 MB",
        retention="10 days",
        enqueue=True,
        backtrace=True,
        diagnose=True,
    )


def setup_signal_handlers(driver: ScanCycleDriver):
    """Setup signal handlers for graceful shutdown."""

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}; requesting shutdown...")
        driver.request_stop()

    for sig in (getattr(signal, "SIGINT", None), getattr(signal, "SIGTERM", None)):
        if sig is not None:
            signal.signal(sig, handle_signal)


def open_store():
    """Engine, schema and session factory for the shared store."""
    engine = build_engine(Config.DATABASE_URL)
    init_db(engine)
    return make_session_factory(engine)


def build_driver(session_factory, token=None) -> ScanCycleDriver:
    state = WorkerStateRepository(session_factory)
    state.initialize()

    workflows = WorkflowRegistry(session_factory)
    workflows.seed_default()

    retry_queue = build_retry_queue(session_factory)
    processor = DocumentProcessor(
        session_factory,
        connector=PaperlessConnector(token=token),
        extractor=OllamaExtractor(),
        retry_queue=retry_queue,
        processing_log=ProcessingLog(session_factory),
        workflows=workflows,
    )
    return ScanCycleDriver(
        processor,
        state=state,
        lock=LockCoordinator(session_factory, holder_id=default_holder_id("worker")),
        webhook_queue=WebhookQueue(session_factory),
    )


def main():
    """Main entry point - prepares the store then runs the scan loop until stopped."""
    setup_logging()

    driver = None
    try:
        session_factory = open_store()
        token = None
        if Config.BOOTSTRAP_WAIT and not Config.validate():
            token = ServiceBootstrapper.bootstrap_all_services()
        driver = build_driver(session_factory, token=token)
        setup_signal_handlers(driver)
        driver.run()
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(130)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if driver is not None:
            driver.processor.connector.close()
        logger.info("Receipt worker stopped.")


if __name__ == "__main__":
    main()
