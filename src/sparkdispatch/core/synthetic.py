"""Synthetic job ids for operations that have no backing remote job.

Dropping an index completes during dispatch, so there is no job to poll.
The outcome is encoded into a job id instead; a random prefix keeps
repeated encodings of the same status textually distinct.
"""

from __future__ import annotations

import base64
import secrets
import string
from dataclasses import dataclass

from sparkdispatch.core.jobs import JobRunState
from sparkdispatch.core.results import DATA_FIELD, ERROR_FIELD, STATUS_FIELD, StatusDocument

PREFIX_LEN = 10
DROP_INDEX_APPLICATION_ID = "fakeDropIndexApplicationId"

_ALPHANUMERIC = string.ascii_letters + string.digits


def _random_prefix(length: int = PREFIX_LEN) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


@dataclass(frozen=True)
class DropIndexResult:
    """Outcome of a drop-index operation."""

    status: str

    @classmethod
    def from_job_id(cls, job_id: str) -> "DropIndexResult":
        """Decode a synthetic job id back into its status."""
        try:
            decoded = base64.b64decode(job_id.encode("ascii"), validate=True).decode("utf-8")
        except (ValueError, UnicodeError) as exc:
            raise ValueError(f"Invalid synthetic job id: '{job_id}'") from exc
        if len(decoded) <= PREFIX_LEN:
            raise ValueError(f"Invalid synthetic job id: '{job_id}'")
        return cls(status=decoded[PREFIX_LEN:])

    def to_job_id(self) -> str:
        """Encode the status into a fresh synthetic job id."""
        raw = _random_prefix() + self.status
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @property
    def succeeded(self) -> bool:
        return self.status.upper() == JobRunState.SUCCESS.value

    def result(self) -> StatusDocument:
        """Return the status document reported for this outcome."""
        if self.succeeded:
            return {
                STATUS_FIELD: self.status,
                DATA_FIELD: {
                    "result": [],
                    "schema": [],
                    "applicationId": DROP_INDEX_APPLICATION_ID,
                },
            }
        return {STATUS_FIELD: self.status, ERROR_FIELD: "failed to drop index"}
