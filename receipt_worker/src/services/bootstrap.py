import contextlib
import time

import httpx
from loguru import logger

from ..config import Config
from ..connectors import PaperlessConnector


class ServiceBootstrapper:
    """Waits for the upstream services the worker talks to."""

    @staticmethod
    def wait_for_http_service(url: str, timeout: int = 240):
        """Wait for HTTP service to become available."""
        logger.info(f"[bootstrap] Waiting for HTTP service: {url}")
        start_time = time.time()

        while time.time() - start_time < timeout:
            with contextlib.suppress(httpx.HTTPError):
                with httpx.Client(timeout=5) as client:
                    response = client.get(url)
                    if 200 <= response.status_code < 500:
                        logger.info(f"[bootstrap] Available: {url}")
                        return
            time.sleep(2)

        raise RuntimeError(f"Service not available: {url}")

    @classmethod
    def bootstrap_all_services(cls, timeout: int = 600) -> str:
        """Wait for Paperless and Ollama, then for the Paperless token; returns the token."""
        cls.wait_for_http_service(Config.PAPERLESS_URL, timeout=timeout)
        cls.wait_for_http_service(f"{Config.OLLAMA_URL}/api/tags", timeout=timeout)
        token = PaperlessConnector.wait_for_token(timeout_seconds=timeout)
        logger.info("[bootstrap] Services ready.")
        return token
