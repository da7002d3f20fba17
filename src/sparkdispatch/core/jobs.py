"""Core job domain models and the job client contract.

This module defines the data structures exchanged with the remote Spark
job backend (JobRun, JobRunState, StartJobRequest) and the protocol that
backend adapters implement. It is intentionally free of SDK types so the
dispatcher can be exercised against stubs in tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Protocol

INDEX_TAG_KEY = "index"
DATASOURCE_TAG_KEY = "datasource"
SCHEMA_TAG_KEY = "schema"
TABLE_TAG_KEY = "table"
CLUSTER_NAME_TAG_KEY = "cluster"

DEFAULT_JOB_TIMEOUT_MINUTES = 120


class JobRunState(str, Enum):
    """
    Enumeration of the states a remote job run can report.

    Values:
        SUBMITTED: The run was accepted by the backend.
        PENDING: The run is waiting for capacity.
        SCHEDULED: Capacity was found and the run is being scheduled.
        RUNNING: The run is currently executing.
        SUCCESS: The run completed successfully.
        FAILED: The run completed with an error.
        CANCELLING: A cancel request is being processed.
        CANCELLED: The run was cancelled before completion.
    """

    SUBMITTED = "SUBMITTED"
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLING = "CANCELLING"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class JobRun:
    """
    Represents the backend's view of a single job run.

    Attributes:
        application_id: Compute application the run belongs to.
        job_id: Unique identifier of the job run.
        state: State string exactly as reported by the backend.
    """

    application_id: str
    job_id: str
    state: str


@dataclass(frozen=True)
class StartJobRequest:
    """
    Everything the backend needs to start one Spark job run.

    Attributes:
        query: Query text handed to the Spark application.
        job_name: Human-readable run name.
        application_id: Compute application to run on.
        execution_role_arn: Role the job assumes while running.
        spark_submit_params: Rendered spark-submit parameter string.
        tags: Key-value tags attached to the run.
        is_structured_streaming: True for continuously running index jobs.
        result_index: Result-store location the job writes to.
    """

    query: str
    job_name: str
    application_id: str
    execution_role_arn: str
    spark_submit_params: str
    tags: Mapping[str, str] = field(default_factory=dict)
    is_structured_streaming: bool = False
    result_index: str | None = None

    @property
    def execution_timeout_minutes(self) -> int:
        """Return the backend execution timeout; 0 disables it for streaming jobs."""
        return 0 if self.is_structured_streaming else DEFAULT_JOB_TIMEOUT_MINUTES


class JobClient(Protocol):
    """Interface for starting, cancelling and inspecting remote job runs."""

    def start_job_run(self, request: StartJobRequest) -> str:
        """Start a job run and return its job id."""
        ...

    def cancel_job_run(self, application_id: str, job_id: str) -> str:
        """Request cancellation of a job run and return the cancelled run id."""
        ...

    def get_job_run(self, application_id: str, job_id: str) -> JobRun:
        """Return the current backend state of a job run."""
        ...


def default_tags(cluster_name: str, data_source: str) -> dict[str, str]:
    """Return the tags every submitted job carries."""
    return {
        CLUSTER_NAME_TAG_KEY: cluster_name,
        DATASOURCE_TAG_KEY: data_source,
    }
