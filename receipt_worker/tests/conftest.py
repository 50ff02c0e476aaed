from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from receipt_worker.src.errors import DocumentStoreError
from receipt_worker.src.store import build_engine, init_db, make_session_factory


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class MockPaperless:
    """In-memory stand-in for PaperlessConnector."""

    def __init__(self, documents: Optional[Dict[int, Dict[str, Any]]] = None, tags: Optional[Dict[int, str]] = None):
        self.documents = documents or {}
        self.tags = dict(tags or {})
        self.correspondents: Dict[int, str] = {}
        self.custom_fields: Dict[int, str] = {}
        self.updates: List[Dict[str, Any]] = []
        self.updated_ids: List[int] = []
        self.notes: Dict[int, List[str]] = {}

    def _lookup(self, table: Dict[int, str], name: str) -> int:
        for item_id, item_name in table.items():
            if item_name.lower() == name.lower():
                return item_id
        new_id = max(table, default=0) + 1
        table[new_id] = name
        return new_id

    def get_tags(self):
        return [{"id": tag_id, "name": name} for tag_id, name in self.tags.items()]

    def tag_names(self, document):
        return [self.tags[tag_id] for tag_id in document.get("tags") or [] if tag_id in self.tags]

    def list_untagged_documents(self, trigger_tag, processed_tag=None, excluded_tags=None):
        unwanted = {name.lower() for name in [processed_tag, *(excluded_tags or [])] if name}

        def names_of(doc):
            return {name.lower() for name in self.tag_names(doc)}

        return [
            dict(doc)
            for doc in self.documents.values()
            if trigger_tag.lower() in names_of(doc) and not names_of(doc) & unwanted
        ]

    def get_document(self, doc_id):
        if doc_id not in self.documents:
            raise DocumentStoreError(f"document {doc_id} not found", status_code=404)
        document = self.documents[doc_id]
        return {**document, "tags": list(document.get("tags") or [])}

    def download_thumbnail_or_file(self, doc_id):
        return b"\x89PNG fake image"

    def update_document(self, doc_id, updates):
        self.updates.append({"id": doc_id, **updates})
        self.updated_ids.append(doc_id)
        if "tags" in updates:
            self.documents[doc_id]["tags"] = list(updates["tags"])

    def add_tag(self, doc_id, tag_name):
        tag_id = self.get_or_create_tag(tag_name)
        tags = self.documents[doc_id].setdefault("tags", [])
        if tag_id not in tags:
            tags.append(tag_id)

    def get_or_create_tag(self, name):
        return self._lookup(self.tags, name)

    def get_or_create_correspondent(self, name):
        return self._lookup(self.correspondents, name)

    def ensure_custom_field(self, name, data_type="longtext"):
        return self._lookup(self.custom_fields, name)

    def add_note(self, doc_id, note):
        self.notes.setdefault(doc_id, []).append(note)

    def close(self):
        pass


RECEIPT = {"vendor": "Corner Shop", "amount": 12.5, "currency": "EUR", "date": "2025-02-28", "category": "groceries"}


class MockExtractor:
    """Returns queued outcomes in order (exceptions are raised), then a default receipt."""

    def __init__(self, outcomes: Optional[List[Any]] = None, default: Optional[List[Dict[str, Any]]] = None):
        self.outcomes = list(outcomes or [])
        self.default = default if default is not None else [dict(RECEIPT)]
        self.calls = 0

    def extract(self, image_bytes, json_schema, prompt_instructions=None, existing_tags=None, validator=None):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'state.db'}"


@pytest.fixture
def session_factory(db_url):
    engine = build_engine(db_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def second_session_factory(db_url, session_factory):
    """A separate engine on the same file, standing in for the other OS process."""
    engine = build_engine(db_url)
    yield make_session_factory(engine)
    engine.dispose()
