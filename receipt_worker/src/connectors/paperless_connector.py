import contextlib
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlsplit

import httpx
from loguru import logger

from ..config import Config
from ..errors import DocumentStoreError


class PaperlessConnector:
    """Handles document retrieval and metadata updates against the Paperless API."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 client: Optional[httpx.Client] = None):
        self.base_url = (base_url or Config.PAPERLESS_URL).rstrip("/")
        self._token = token
        self._client = client

    @staticmethod
    def wait_for_token(timeout_seconds: int = 0) -> str:
        """Wait for a Paperless authentication token."""
        if Config.PAPERLESS_TOKEN:
            return Config.PAPERLESS_TOKEN

        token_path = Config.PAPERLESS_TOKEN_FILE
        if not token_path:
            raise DocumentStoreError("Neither PAPERLESS_TOKEN nor PAPERLESS_TOKEN_FILE is specified.")

        logger.info(f"[bootstrap] Watching token: {token_path}")
        deadline = (time.time() + timeout_seconds) if timeout_seconds > 0 else None

        while True:
            with contextlib.suppress(OSError):
                if os.path.isfile(token_path) and os.path.getsize(token_path) > 0:
                    content = Path(token_path).read_text(encoding="utf-8").strip()
                    if content and content.upper() != "PENDING":
                        logger.info("[bootstrap] Paperless token read.")
                        return content

            if deadline and time.time() > deadline:
                raise DocumentStoreError("Token not available within the specified time.")
            time.sleep(2)

    def get_headers(self) -> Dict[str, str]:
        """Get authorization headers for Paperless API."""
        if not self._token:
            self._token = self.wait_for_token()
        return {"Authorization": f"Token {self._token}", "Accept": "application/json"}

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=Config.PAPERLESS_TIMEOUT)
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}/api{path}"
        try:
            response = self.client.request(method, url, headers=self.get_headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise DocumentStoreError(f"Paperless request failed ({method} {url}): {exc}") from exc
        if not response.is_success:
            raise DocumentStoreError(
                f"Paperless API error ({response.status_code}) for {method} {url}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return response

    def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        response = self._request("GET", path, params=params)
        while True:
            data = response.json()
            yield from data.get("results", [])
            next_url = data.get("next")
            if not next_url:
                return
            # follow "next" relative to our base so proxies rewriting the host keep working
            parts = urlsplit(next_url)
            next_path = parts.path[4:] if parts.path.startswith("/api") else parts.path
            response = self._request("GET", f"{next_path}?{parts.query}" if parts.query else next_path)

    def get_tags(self) -> List[Dict[str, Any]]:
        return list(self._paginate("/tags/", params={"page_size": 1000}))

    def find_tag(self, name: str, tags: Optional[List[Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
        tags = tags if tags is not None else self.get_tags()
        return next((tag for tag in tags if tag["name"].lower() == name.lower()), None)

    def tag_names(self, document: Dict[str, Any]) -> List[str]:
        """Resolve a document's tag IDs into names."""
        by_id = {tag["id"]: tag["name"] for tag in self.get_tags()}
        return [by_id[tag_id] for tag_id in document.get("tags") or [] if tag_id in by_id]

    def list_untagged_documents(
        self, trigger_tag: str, processed_tag: Optional[str] = None, excluded_tags: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Documents carrying the trigger tag and none of the processed or excluded tags."""
        tags = self.get_tags()
        trigger = self.find_tag(trigger_tag, tags)
        if trigger is None:
            logger.info(f"[paperless] trigger tag '{trigger_tag}' does not exist; nothing to scan")
            return []
        params: Dict[str, Any] = {"tags__id__all": trigger["id"], "ordering": "id"}
        none_ids = [
            str(tag["id"])
            for name in [processed_tag, *(excluded_tags or [])]
            if name and (tag := self.find_tag(name, tags))
        ]
        if none_ids:
            params["tags__id__none"] = ",".join(dict.fromkeys(none_ids))
        return list(self._paginate("/documents/", params=params))

    def get_document(self, doc_id: int) -> Dict[str, Any]:
        """Get detailed document data by ID."""
        return self._request("GET", f"/documents/{doc_id}/").json()

    def download_thumbnail(self, doc_id: int) -> bytes:
        return self._request("GET", f"/documents/{doc_id}/thumb/").content

    def download_file(self, doc_id: int) -> bytes:
        return self._request("GET", f"/documents/{doc_id}/download/").content

    def download_thumbnail_or_file(self, doc_id: int) -> bytes:
        """Prefer the thumbnail (smaller, always an image); fall back to the original file."""
        try:
            data = self.download_thumbnail(doc_id)
            logger.info(f"[doc:{doc_id}] downloaded thumbnail ({len(data) / 1024:.1f} KB)")
            return data
        except DocumentStoreError as thumb_error:
            logger.debug(f"[doc:{doc_id}] thumbnail unavailable ({thumb_error}); downloading raw file")
        data = self.download_file(doc_id)
        logger.info(f"[doc:{doc_id}] downloaded raw file ({len(data) / 1024:.1f} KB)")
        return data

    def update_document(self, doc_id: int, updates: Dict[str, Any]):
        payload = {key: value for key, value in updates.items() if value is not None}
        self._request("PATCH", f"/documents/{doc_id}/", json=payload)

    def add_tag(self, doc_id: int, tag_name: str):
        tag_id = self.get_or_create_tag(tag_name)
        tags = list(self.get_document(doc_id).get("tags") or [])
        if tag_id not in tags:
            self.update_document(doc_id, {"tags": tags + [tag_id]})

    def _get_or_create(self, endpoint: str, name: str, extra: Optional[Dict[str, Any]] = None) -> int:
        def lookup() -> Optional[int]:
            for item in self._paginate(endpoint, params={"name__iexact": name}):
                if item["name"].lower() == name.lower():
                    return item["id"]
            return None

        if (existing := lookup()) is not None:
            return existing
        try:
            return self._request("POST", endpoint, json={"name": name, **(extra or {})}).json()["id"]
        except DocumentStoreError as exc:
            # another process may have created it between lookup and POST
            if exc.status_code == 400 and (existing := lookup()) is not None:
                return existing
            raise

    def get_or_create_tag(self, name: str) -> int:
        return self._get_or_create("/tags/", name)

    def get_or_create_correspondent(self, name: str) -> int:
        return self._get_or_create("/correspondents/", name)

    def ensure_custom_field(self, name: str, data_type: str = "longtext") -> int:
        return self._get_or_create("/custom_fields/", name, {"data_type": data_type})

    def add_note(self, doc_id: int, note: str):
        self._request("POST", f"/documents/{doc_id}/notes/", json={"note": note})
