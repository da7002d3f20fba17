"""Query dispatch and status reconciliation.

The dispatcher decides, per query, how it runs on the Spark backend:

- DROP_INDEX: cancel the index's streaming job and delete its index; no
  remote job is started, the outcome travels in a synthetic job id.
- CREATE_INDEX: start a job that builds (and, with auto refresh, keeps
  refreshing) a Flint index.
- NON_INDEX_BATCH: start one batch job for the query.
- NON_INDEX_SESSION: submit the query as a statement into an interactive
  session, creating the session first when the request names none.

The route is decided once by `plan()` and then dispatched on. Status and
cancel requests are reconciled against result documents, session state
and the job backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable

from sparkdispatch.core.config import DispatcherSettings
from sparkdispatch.core.datasources import (
    DataSourceAuthorizer,
    DataSourceMetadata,
    DataSourceService,
)
from sparkdispatch.core.indices import (
    IndexMetadataReader,
    IndexOperation,
    IndexStore,
    QueryClassifier,
)
from sparkdispatch.core.jobs import (
    INDEX_TAG_KEY,
    SCHEMA_TAG_KEY,
    TABLE_TAG_KEY,
    JobClient,
    JobRunState,
    StartJobRequest,
    default_tags,
)
from sparkdispatch.core.logging import get_logger
from sparkdispatch.core.results import (
    ERROR_FIELD,
    STATUS_FIELD,
    ResultReader,
    StatusDocument,
    apply_result_status,
    has_result,
)
from sparkdispatch.core.session import (
    CreateSessionRequest,
    QueryRequest,
    Session,
    SessionManager,
    SessionNotFoundError,
    Statement,
    StatementNotFoundError,
)
from sparkdispatch.core.submit import SparkSubmitParameters
from sparkdispatch.core.synthetic import DropIndexResult

logger = get_logger(__name__)


class LangType(str, Enum):
    SQL = "SQL"
    PPL = "PPL"


class DispatchRoute(str, Enum):
    DROP_INDEX = "DROP_INDEX"
    CREATE_INDEX = "CREATE_INDEX"
    NON_INDEX_BATCH = "NON_INDEX_BATCH"
    NON_INDEX_SESSION = "NON_INDEX_SESSION"


@dataclass(frozen=True)
class DispatchRequest:
    """
    One inbound query plus its execution context.

    Attributes:
        query: Query text.
        lang: Query language.
        data_source: Name of the data source the query runs against.
        cluster_name: Name of the cluster issuing the query (job tags/names).
        application_id: Compute application to run on.
        execution_role_arn: Role the Spark job assumes.
        session_id: Existing session to submit into, if any.
        extra_spark_submit_params: Extra spark-submit parameters, appended verbatim.
    """

    query: str
    lang: LangType
    data_source: str
    cluster_name: str
    application_id: str
    execution_role_arn: str
    session_id: str | None = None
    extra_spark_submit_params: str | None = None


@dataclass(frozen=True)
class DispatchResponse:
    """
    Result of a dispatch decision.

    `query_id` is a job id, a statement id (session routes) or a synthetic
    job id (`is_synthetic_op`).
    """

    query_id: str
    is_synthetic_op: bool
    result_index: str | None
    session_id: str | None = None


@dataclass(frozen=True)
class JobMetadata:
    """Caller-held record correlating a dispatch with later status/cancel calls."""

    job_id: str
    application_id: str
    result_index: str | None
    session_id: str | None = None
    is_drop_index_op: bool = False

    @classmethod
    def from_response(cls, response: DispatchResponse, application_id: str) -> "JobMetadata":
        return cls(
            job_id=response.query_id,
            application_id=application_id,
            result_index=response.result_index,
            session_id=response.session_id,
            is_drop_index_op=response.is_synthetic_op,
        )


@dataclass(frozen=True)
class RoutePlan:
    """The route chosen for a request, with the parsed index operation if any."""

    route: DispatchRoute
    index_operation: IndexOperation | None = None

    def require_index_operation(self) -> IndexOperation:
        """Return the index operation of an index route."""
        if self.index_operation is None:
            raise ValueError(f"Route {self.route.value} carries no index operation.")
        return self.index_operation


@dataclass(frozen=True)
class StepOutcome:
    """Captured result of one best-effort step of a composite operation."""

    name: str
    attempted: bool
    ok: bool
    error: str | None = None


class QueryDispatcher:
    """Route queries to the Spark backend and reconcile their status."""

    def __init__(
        self,
        *,
        job_client: JobClient,
        data_sources: DataSourceService,
        authorizer: DataSourceAuthorizer,
        result_reader: ResultReader,
        index_metadata_reader: IndexMetadataReader,
        index_store: IndexStore,
        session_manager: SessionManager,
        classifier: QueryClassifier,
        settings: DispatcherSettings,
    ):
        self.job_client = job_client
        self.data_sources = data_sources
        self.authorizer = authorizer
        self.result_reader = result_reader
        self.index_metadata_reader = index_metadata_reader
        self.index_store = index_store
        self.session_manager = session_manager
        self.classifier = classifier
        self.settings = settings
        self._handlers: dict[
            DispatchRoute, Callable[[DispatchRequest, RoutePlan, DataSourceMetadata], DispatchResponse]
        ] = {
            DispatchRoute.DROP_INDEX: self._handle_drop_index,
            DispatchRoute.CREATE_INDEX: self._handle_index,
            DispatchRoute.NON_INDEX_BATCH: self._handle_batch,
            DispatchRoute.NON_INDEX_SESSION: self._handle_session,
        }

    @property
    def sessions_enabled(self) -> bool:
        return self.settings.sessions_enabled

    def plan(self, request: DispatchRequest) -> RoutePlan:
        """Classify a request into exactly one dispatch route."""
        if request.lang == LangType.SQL and self.classifier.is_index_query(request.query):
            operation = self.classifier.extract(request.query).with_data_source(
                request.data_source
            )
            if operation.is_drop:
                return RoutePlan(DispatchRoute.DROP_INDEX, operation)
            return RoutePlan(DispatchRoute.CREATE_INDEX, operation)
        if self.sessions_enabled:
            return RoutePlan(DispatchRoute.NON_INDEX_SESSION)
        return RoutePlan(DispatchRoute.NON_INDEX_BATCH)

    def dispatch(self, request: DispatchRequest) -> DispatchResponse:
        """
        Dispatch a query.

        The data source is resolved and authorized before anything else
        happens; authorization failures leave no job or session behind.
        """
        plan = self.plan(request)
        metadata = self.data_sources.get_raw_data_source_metadata(request.data_source)
        self.authorizer.authorize_data_source(metadata)
        logger.info(
            "dispatch_routed",
            route=plan.route.value,
            data_source=request.data_source,
            cluster=request.cluster_name,
        )
        return self._handlers[plan.route](request, plan, metadata)

    def _result_index(self, metadata: DataSourceMetadata) -> str:
        return metadata.result_index or self.settings.default_result_index

    def _submit_parameters(
        self, request: DispatchRequest, metadata: DataSourceMetadata
    ) -> SparkSubmitParameters:
        return (
            SparkSubmitParameters()
            .data_source(metadata)
            .extra_parameters(request.extra_spark_submit_params)
        )

    def _start_job(self, job_request: StartJobRequest) -> str:
        job_id = self.job_client.start_job_run(job_request)
        logger.info(
            "job_started",
            job_id=job_id,
            job_name=job_request.job_name,
            streaming=job_request.is_structured_streaming,
        )
        return job_id

    def _handle_index(
        self, request: DispatchRequest, plan: RoutePlan, metadata: DataSourceMetadata
    ) -> DispatchResponse:
        operation = plan.require_index_operation()
        tags = default_tags(request.cluster_name, request.data_source)
        tags[INDEX_TAG_KEY] = operation.index_name or operation.flint_index_name()
        tags[TABLE_TAG_KEY] = operation.table.table_name
        tags[SCHEMA_TAG_KEY] = operation.table.schema_name
        result_index = self._result_index(metadata)
        params = self._submit_parameters(request, metadata).structured_streaming(
            operation.auto_refresh
        )
        job_id = self._start_job(
            StartJobRequest(
                query=request.query,
                job_name=f"{request.cluster_name}:index-query",
                application_id=request.application_id,
                execution_role_arn=request.execution_role_arn,
                spark_submit_params=params.render(),
                tags=tags,
                is_structured_streaming=operation.auto_refresh,
                result_index=result_index,
            )
        )
        return DispatchResponse(job_id, False, result_index)

    def _handle_batch(
        self, request: DispatchRequest, plan: RoutePlan, metadata: DataSourceMetadata
    ) -> DispatchResponse:
        result_index = self._result_index(metadata)
        job_id = self._start_job(
            StartJobRequest(
                query=request.query,
                job_name=f"{request.cluster_name}:non-index-query",
                application_id=request.application_id,
                execution_role_arn=request.execution_role_arn,
                spark_submit_params=self._submit_parameters(request, metadata).render(),
                tags=default_tags(request.cluster_name, request.data_source),
                is_structured_streaming=False,
                result_index=result_index,
            )
        )
        return DispatchResponse(job_id, False, result_index)

    def _handle_session(
        self, request: DispatchRequest, plan: RoutePlan, metadata: DataSourceMetadata
    ) -> DispatchResponse:
        result_index = self._result_index(metadata)
        if request.session_id is not None:
            session = self._require_session(request.session_id)
            self.session_manager.reconcile(session)
        else:
            session = self.session_manager.create_session(
                CreateSessionRequest(
                    job_name=f"{request.cluster_name}:non-index-query",
                    application_id=request.application_id,
                    execution_role_arn=request.execution_role_arn,
                    spark_submit_params=self._submit_parameters(request, metadata),
                    tags=default_tags(request.cluster_name, request.data_source),
                    result_index=result_index,
                    data_source_name=metadata.name,
                )
            )
        statement_id = session.submit(QueryRequest(request.lang.value, request.query))
        return DispatchResponse(statement_id, False, result_index, session.session_id)

    def _handle_drop_index(
        self, request: DispatchRequest, plan: RoutePlan, metadata: DataSourceMetadata
    ) -> DispatchResponse:
        operation = plan.require_index_operation()
        index_metadata = self.index_metadata_reader.get_index_metadata(operation)

        cancel = self._cancel_index_job(
            request.application_id, index_metadata.job_id, index_metadata.auto_refresh
        )
        delete = self._delete_index(operation.flint_index_name())

        # Reported status follows the delete; the cancel outcome is only logged.
        status = JobRunState.SUCCESS if delete.ok else JobRunState.FAILED
        logger.info(
            "drop_index_finished",
            index=operation.flint_index_name(),
            status=status.value,
            cancel_ok=cancel.ok,
            cancel_attempted=cancel.attempted,
        )
        return DispatchResponse(
            DropIndexResult(status.value).to_job_id(),
            True,
            self._result_index(metadata),
        )

    def _cancel_index_job(
        self, application_id: str, job_id: str | None, auto_refresh: bool
    ) -> StepOutcome:
        """Cancel the streaming job of an auto-refreshed index, never raising."""
        if not auto_refresh or not job_id:
            return StepOutcome("cancel", attempted=False, ok=True)
        try:
            self.job_client.cancel_job_run(application_id, job_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("drop_index_cancel_failed", job_id=job_id, error=str(exc))
            return StepOutcome("cancel", attempted=True, ok=False, error=str(exc))
        return StepOutcome("cancel", attempted=True, ok=True)

    def _delete_index(self, index_name: str) -> StepOutcome:
        """Delete the index backing a Flint index, never raising."""
        try:
            acknowledged = self.index_store.delete_index(index_name)
        except Exception as exc:  # noqa: BLE001
            logger.error("drop_index_delete_failed", index=index_name, error=str(exc))
            return StepOutcome("delete", attempted=True, ok=False, error=str(exc))
        if not acknowledged:
            logger.error("drop_index_not_acknowledged", index=index_name)
            return StepOutcome("delete", attempted=True, ok=False, error="not acknowledged")
        return StepOutcome("delete", attempted=True, ok=True)

    def _require_session(self, session_id: str) -> Session:
        session = self.session_manager.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"no session found. {session_id}")
        return session

    def _require_statement(self, session_id: str, statement_id: str) -> Statement:
        session = self._require_session(session_id)
        statement = session.get(statement_id)
        if statement is None:
            raise StatementNotFoundError(f"no statement found. {statement_id}")
        return statement

    def get_status(self, metadata: JobMetadata) -> StatusDocument:
        """
        Return the status document for a dispatched query.

        A data payload in the result document always wins over the job or
        statement state: a job can finish while the query failed, and
        streaming index jobs never finish while their results succeed.
        """
        if metadata.is_drop_index_op:
            return DropIndexResult.from_job_id(metadata.job_id).result()

        # Session-scoped metadata carries the statement id as its job id.
        if metadata.session_id is None:
            document = self.result_reader.get_result_from_job_id(
                metadata.job_id, metadata.result_index
            )
        else:
            document = self.result_reader.get_result_with_query_id(
                metadata.job_id, metadata.result_index
            )

        if has_result(document):
            return apply_result_status(document)

        result = dict(document)
        if metadata.session_id is not None:
            statement = self._require_statement(metadata.session_id, metadata.job_id)
            result[STATUS_FIELD] = statement.state.value
            result[ERROR_FIELD] = statement.error
        else:
            job_run = self.job_client.get_job_run(metadata.application_id, metadata.job_id)
            result[STATUS_FIELD] = job_run.state
            result[ERROR_FIELD] = ""
        return result

    def cancel(self, metadata: JobMetadata) -> str:
        """
        Cancel a dispatched query and return the cancelled id.

        Session statements are cancelled in the request index; the session
        program skips or stops them. Batch and index jobs are cancelled on the
        backend, which may still report them as running for a while.
        """
        if metadata.session_id is not None:
            statement = self._require_statement(metadata.session_id, metadata.job_id)
            statement.cancel()
            return statement.statement_id
        return self.job_client.cancel_job_run(metadata.application_id, metadata.job_id)
