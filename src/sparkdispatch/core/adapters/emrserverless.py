"""EMR Serverless job client.

Every job runs the Flint Spark application jar; the query and its result
index are passed as entry point arguments.
"""

from __future__ import annotations

from sparkdispatch.core.config import DEFAULT_ENTRY_POINT
from sparkdispatch.core.jobs import JobRun, StartJobRequest


class EmrServerlessJobClient:
    """Adapter around the boto3 EMR Serverless job run APIs."""

    def __init__(self, client, entry_point: str = DEFAULT_ENTRY_POINT):
        """Create a job client on top of a boto3 `emr-serverless` client."""
        self.client = client
        self.entry_point = entry_point

    def start_job_run(self, request: StartJobRequest) -> str:
        """Start a Spark job run and return its job run id."""
        response = self.client.start_job_run(
            name=request.job_name,
            applicationId=request.application_id,
            executionRoleArn=request.execution_role_arn,
            tags=dict(request.tags),
            executionTimeoutMinutes=request.execution_timeout_minutes,
            jobDriver={
                "sparkSubmit": {
                    "entryPoint": self.entry_point,
                    "entryPointArguments": [
                        request.query,
                        request.result_index or "",
                    ],
                    "sparkSubmitParameters": request.spark_submit_params,
                }
            },
        )
        return response["jobRunId"]

    def cancel_job_run(self, application_id: str, job_id: str) -> str:
        """Request cancellation of a job run and return the cancelled run id."""
        response = self.client.cancel_job_run(applicationId=application_id, jobRunId=job_id)
        return response["jobRunId"]

    def get_job_run(self, application_id: str, job_id: str) -> JobRun:
        """Return the current state of a job run as reported by EMR Serverless."""
        response = self.client.get_job_run(applicationId=application_id, jobRunId=job_id)
        job_run = response.get("jobRun") or {}
        return JobRun(
            application_id=job_run.get("applicationId", application_id),
            job_id=job_run.get("jobRunId", job_id),
            state=str(job_run.get("state") or ""),
        )
