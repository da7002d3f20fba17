"""OpenSearch adapters.

The Spark jobs and the session program share one OpenSearch cluster with
the dispatcher: result documents, Flint indexes and the request index
holding session and statement documents all live there.
"""

from __future__ import annotations

from typing import Any, Mapping

from opensearchpy import OpenSearch
from opensearchpy.exceptions import ConflictError, NotFoundError, RequestError

from sparkdispatch.core.indices import IndexMetadata, IndexNotFoundError, IndexOperation
from sparkdispatch.core.results import DATA_FIELD, DEFAULT_RESULT_INDEX, StatusDocument
from sparkdispatch.core.session import (
    REQUEST_INDEX_PREFIX,
    SUBMIT_TIME_FIELD,
    StoredDocument,
    request_index_name,
)

JOB_ID_FIELD = "jobRunId"
QUERY_ID_FIELD = "queryId"
FLINT_JOB_ID_ENV = "SERVERLESS_EMR_JOB_ID"

MAX_STATE_DOCUMENTS = 1000

_KEYWORD = {"type": "keyword"}
REQUEST_INDEX_MAPPINGS = {
    "properties": {
        "version": _KEYWORD,
        "type": _KEYWORD,
        "sessionType": _KEYWORD,
        "sessionId": _KEYWORD,
        "statementId": _KEYWORD,
        "queryId": _KEYWORD,
        "applicationId": _KEYWORD,
        "jobId": _KEYWORD,
        "dataSourceName": _KEYWORD,
        "state": _KEYWORD,
        "lang": _KEYWORD,
        "query": {"type": "text"},
        "error": {"type": "text"},
        "submitTime": {"type": "date", "format": "strict_date_time||epoch_millis"},
        "lastUpdateTime": {"type": "date", "format": "strict_date_time||epoch_millis"},
    }
}


class OpenSearchResultReader:
    """Read query result documents written by Spark jobs."""

    def __init__(self, client: OpenSearch, default_index: str = DEFAULT_RESULT_INDEX):
        self.client = client
        self.default_index = default_index

    def _search(self, field: str, value: str, result_index: str | None) -> StatusDocument:
        """Return `{"data": <first hit>}` for a term query, or `{}` if nothing matched."""
        index = result_index or self.default_index
        try:
            response = self.client.search(
                index=index,
                body={"query": {"term": {field: value}}},
            )
        except NotFoundError:
            # The result index is created by the first job that writes to it.
            return {}
        hits = ((response or {}).get("hits") or {}).get("hits") or []
        if not hits:
            return {}
        return {DATA_FIELD: dict(hits[0].get("_source") or {})}

    def get_result_from_job_id(self, job_id: str, result_index: str | None) -> StatusDocument:
        """Return the result document written by a batch or index job."""
        return self._search(JOB_ID_FIELD, job_id, result_index)

    def get_result_with_query_id(self, query_id: str, result_index: str | None) -> StatusDocument:
        """Return the result document written for a session statement."""
        return self._search(QUERY_ID_FIELD, query_id, result_index)


class OpenSearchIndexStore:
    """Delete the indexes backing Flint indexes."""

    def __init__(self, client: OpenSearch):
        self.client = client

    def delete_index(self, index_name: str) -> bool:
        """Delete an index and return whether the cluster acknowledged it."""
        response = self.client.indices.delete(index=index_name)
        return bool((response or {}).get("acknowledged"))


def _nested(source: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(source, dict):
            return None
        source = source.get(key)
    return source


class FlintIndexMetadataReader:
    """Resolve Flint indexes to their refresh job from the index mapping `_meta`."""

    def __init__(self, client: OpenSearch):
        self.client = client

    def get_index_metadata(self, operation: IndexOperation) -> IndexMetadata:
        """
        Return the streaming job id and auto refresh flag of an index.

        Raises:
            IndexNotFoundError: If the index does not exist or has no mapping.
        """
        index_name = operation.flint_index_name()
        try:
            response = self.client.indices.get_mapping(index=index_name)
        except NotFoundError as exc:
            raise IndexNotFoundError(f"Index '{index_name}' does not exist.") from exc
        mapping = (response or {}).get(index_name)
        if mapping is None:
            raise IndexNotFoundError(f"Index '{index_name}' has no mapping.")
        meta = _nested(mapping, "mappings", "_meta") or {}
        job_id = _nested(meta, "properties", "env", FLINT_JOB_ID_ENV)
        auto_refresh = _nested(meta, "options", "auto_refresh")
        return IndexMetadata(
            job_id=str(job_id) if job_id else None,
            auto_refresh=str(auto_refresh).lower() == "true",
        )


def _stored(doc_id: str, source: Mapping[str, Any], response: Mapping[str, Any]) -> StoredDocument:
    return StoredDocument(
        doc_id=doc_id,
        source=dict(source),
        seq_no=int(response["_seq_no"]),
        primary_term=int(response["_primary_term"]),
    )


class OpenSearchStateStore:
    """
    Session and statement documents in the per data source request index.

    Writes wait for a refresh so the session program and later searches
    see them; updates are conditional on `_seq_no`/`_primary_term`.
    """

    def __init__(self, client: OpenSearch):
        self.client = client
        self._ready: set[str] = set()

    def _ensure_index(self, index: str) -> None:
        if index in self._ready:
            return
        if not self.client.indices.exists(index=index):
            try:
                self.client.indices.create(index=index, body={"mappings": REQUEST_INDEX_MAPPINGS})
            except RequestError as exc:
                if exc.error != "resource_already_exists_exception":
                    raise
        self._ready.add(index)

    def create(
        self, data_source: str, doc_id: str, source: Mapping[str, Any]
    ) -> StoredDocument:
        """Create a document; raises ConflictError if `doc_id` already exists."""
        index = request_index_name(data_source)
        self._ensure_index(index)
        response = self.client.index(
            index=index,
            id=doc_id,
            body=dict(source),
            op_type="create",
            refresh="wait_for",
        )
        return _stored(doc_id, source, response)

    def get(self, data_source: str, doc_id: str) -> StoredDocument | None:
        """Return the document with `doc_id`, or None."""
        try:
            response = self.client.get(index=request_index_name(data_source), id=doc_id)
        except NotFoundError:
            return None
        if not response.get("found", True):
            return None
        return _stored(doc_id, response.get("_source") or {}, response)

    def update_if_unchanged(
        self, data_source: str, document: StoredDocument, changes: Mapping[str, Any]
    ) -> StoredDocument | None:
        """Apply `changes` unless another writer updated the document first."""
        try:
            response = self.client.update(
                index=request_index_name(data_source),
                id=document.doc_id,
                body={"doc": dict(changes)},
                if_seq_no=document.seq_no,
                if_primary_term=document.primary_term,
                refresh="wait_for",
            )
        except ConflictError:
            return None
        return _stored(document.doc_id, {**document.source, **changes}, response)

    def find(self, data_source: str | None, **terms: str) -> list[StoredDocument]:
        """Return matching documents, oldest submission first."""
        index = request_index_name(data_source) if data_source else f"{REQUEST_INDEX_PREFIX}*"
        body = {
            "query": {"bool": {"filter": [{"term": {k: v}} for k, v in terms.items()]}},
            "sort": [{SUBMIT_TIME_FIELD: {"order": "asc"}}],
            "size": MAX_STATE_DOCUMENTS,
            "seq_no_primary_term": True,
        }
        try:
            response = self.client.search(index=index, body=body)
        except NotFoundError:
            return []
        hits = ((response or {}).get("hits") or {}).get("hits") or []
        return [_stored(h["_id"], h.get("_source") or {}, h) for h in hits]
