from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Mapping

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from sparkdispatch.core.session import StoredDocument  # noqa: E402


class MemoryStateStore:
    """In-memory request index with the same conditional-update rules."""

    def __init__(self):
        self._lock = threading.Lock()
        self._docs: dict[tuple[str, str], StoredDocument] = {}
        self._seq_no = 0
        self.updates: list[tuple[str, Mapping[str, Any]]] = []

    def _next_seq_no(self) -> int:
        self._seq_no += 1
        return self._seq_no

    def create(self, data_source: str, doc_id: str, source: Mapping[str, Any]) -> StoredDocument:
        with self._lock:
            key = (data_source.lower(), doc_id)
            if key in self._docs:
                raise ValueError(f"document exists: {doc_id}")
            document = StoredDocument(doc_id, dict(source), self._next_seq_no(), 1)
            self._docs[key] = document
            return document

    def get(self, data_source: str, doc_id: str) -> StoredDocument | None:
        with self._lock:
            return self._docs.get((data_source.lower(), doc_id))

    def update_if_unchanged(
        self, data_source: str, document: StoredDocument, changes: Mapping[str, Any]
    ) -> StoredDocument | None:
        with self._lock:
            key = (data_source.lower(), document.doc_id)
            current = self._docs.get(key)
            if current is None or (current.seq_no, current.primary_term) != (
                document.seq_no,
                document.primary_term,
            ):
                return None
            updated = StoredDocument(
                document.doc_id,
                {**current.source, **changes},
                self._next_seq_no(),
                current.primary_term,
            )
            self._docs[key] = updated
            self.updates.append((document.doc_id, dict(changes)))
            return updated

    def find(self, data_source: str | None, **terms: str) -> list[StoredDocument]:
        with self._lock:
            return [
                document
                for (ds, _), document in self._docs.items()
                if (data_source is None or ds == data_source.lower())
                and all(document.source.get(k) == v for k, v in terms.items())
            ]

    def overwrite(self, data_source: str, doc_id: str, **changes: Any) -> None:
        """Change a document behind every reader's back, as another writer would."""
        with self._lock:
            key = (data_source.lower(), doc_id)
            current = self._docs[key]
            self._docs[key] = StoredDocument(
                doc_id, {**current.source, **changes}, self._next_seq_no(), current.primary_term
            )


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()
