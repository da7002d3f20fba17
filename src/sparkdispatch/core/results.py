"""Result document contract.

Spark jobs write one document per query into a result index. Readers
return either an empty document (no result yet) or `{"data": {...}}`
where the payload may carry `status` and `error` fields.
"""

from __future__ import annotations

from typing import Any, Protocol

from sparkdispatch.core.jobs import JobRunState

DATA_FIELD = "data"
STATUS_FIELD = "status"
ERROR_FIELD = "error"

DEFAULT_RESULT_INDEX = ".query_execution_result"

StatusDocument = dict[str, Any]


class ResultReader(Protocol):
    """Interface for reading persisted query results."""

    def get_result_from_job_id(self, job_id: str, result_index: str | None) -> StatusDocument:
        ...

    def get_result_with_query_id(self, query_id: str, result_index: str | None) -> StatusDocument:
        ...


def has_result(document: StatusDocument) -> bool:
    """Return True if the document carries a data payload."""
    return DATA_FIELD in document


def apply_result_status(document: StatusDocument) -> StatusDocument:
    """
    Lift `status` and `error` from the data payload to the top level.

    A missing status defaults to FAILED so a document without one is never
    reported as a success; a missing error defaults to an empty string.
    """
    payload = document.get(DATA_FIELD) or {}
    result = dict(document)
    result[STATUS_FIELD] = str(payload.get(STATUS_FIELD) or JobRunState.FAILED.value)
    result[ERROR_FIELD] = str(payload.get(ERROR_FIELD) or "")
    return result
