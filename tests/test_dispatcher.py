from types import SimpleNamespace

import pytest

from conftest import MemoryStateStore
from sparkdispatch.core.config import DispatcherSettings
from sparkdispatch.core.datasources import (
    AuthorizationError,
    DataSourceAuthorizer,
    DataSourceMetadata,
    JsonDataSourceCatalog,
)
from sparkdispatch.core.dispatcher import (
    DispatchRequest,
    DispatchRoute,
    JobMetadata,
    LangType,
    QueryDispatcher,
    RoutePlan,
)
from sparkdispatch.core.indices import (
    FlintQueryClassifier,
    IndexMetadata,
    QueryClassificationError,
)
from sparkdispatch.core.jobs import JobRun
from sparkdispatch.core.session import (
    SessionManager,
    SessionNotFoundError,
    SessionState,
    SessionStateError,
    StatementNotFoundError,
    StatementState,
)
from sparkdispatch.core.synthetic import DropIndexResult

DROP_SKIPPING = "DROP SKIPPING INDEX ON my_glue.default.http_logs"
CREATE_SKIPPING = (
    "CREATE SKIPPING INDEX ON my_glue.default.http_logs (status VALUE_SET) "
    "WITH (auto_refresh = true)"
)
SELECT = "SELECT * FROM my_glue.default.http_logs LIMIT 10"


class _JobClient:
    def __init__(self, cancel_error: Exception | None = None, state: str = "RUNNING"):
        self.cancel_error = cancel_error
        self.state = state
        self.started = []
        self.cancelled: list[tuple[str, str]] = []
        self.status_calls: list[tuple[str, str]] = []

    def start_job_run(self, request) -> str:
        self.started.append(request)
        return f"job-{len(self.started)}"

    def cancel_job_run(self, application_id: str, job_id: str) -> str:
        self.cancelled.append((application_id, job_id))
        if self.cancel_error:
            raise self.cancel_error
        return job_id

    def get_job_run(self, application_id: str, job_id: str) -> JobRun:
        self.status_calls.append((application_id, job_id))
        return JobRun(application_id=application_id, job_id=job_id, state=self.state)


class _ResultReader:
    def __init__(self, document: dict | None = None):
        self.document = document or {}
        self.calls: list[tuple[str, str, str | None]] = []

    def get_result_from_job_id(self, job_id, result_index):
        self.calls.append(("job", job_id, result_index))
        return dict(self.document)

    def get_result_with_query_id(self, query_id, result_index):
        self.calls.append(("query", query_id, result_index))
        return dict(self.document)


class _IndexMetadataReader:
    def __init__(self, metadata: IndexMetadata):
        self.metadata = metadata
        self.calls = []

    def get_index_metadata(self, operation):
        self.calls.append(operation)
        return self.metadata


class _IndexStore:
    def __init__(self, acknowledged: bool = True, error: Exception | None = None):
        self.acknowledged = acknowledged
        self.error = error
        self.deleted: list[str] = []

    def delete_index(self, index_name: str) -> bool:
        self.deleted.append(index_name)
        if self.error:
            raise self.error
        return self.acknowledged


def _make(
    *,
    sessions_enabled: bool = False,
    job_client: _JobClient | None = None,
    result_reader: _ResultReader | None = None,
    index_metadata: IndexMetadata | None = None,
    index_store: _IndexStore | None = None,
    user_roles: tuple[str, ...] = ("analyst",),
    state_store: MemoryStateStore | None = None,
):
    fakes = SimpleNamespace(
        job_client=job_client or _JobClient(),
        result_reader=result_reader or _ResultReader(),
        index_metadata_reader=_IndexMetadataReader(
            index_metadata or IndexMetadata(job_id="stream-1", auto_refresh=True)
        ),
        index_store=index_store or _IndexStore(),
        state_store=state_store or MemoryStateStore(),
    )
    fakes.session_manager = SessionManager(fakes.job_client, fakes.state_store)
    catalog = JsonDataSourceCatalog(
        [
            DataSourceMetadata(
                name="my_glue",
                allowed_roles=("analyst",),
                result_index="query_execution_result_my_glue",
            )
        ]
    )
    dispatcher = QueryDispatcher(
        job_client=fakes.job_client,
        data_sources=catalog,
        authorizer=DataSourceAuthorizer(user_roles),
        result_reader=fakes.result_reader,
        index_metadata_reader=fakes.index_metadata_reader,
        index_store=fakes.index_store,
        session_manager=fakes.session_manager,
        classifier=FlintQueryClassifier(),
        settings=DispatcherSettings(sessions_enabled=sessions_enabled),
    )
    return dispatcher, fakes


def _request(query: str, *, lang: LangType = LangType.SQL, session_id: str | None = None):
    return DispatchRequest(
        query=query,
        lang=lang,
        data_source="my_glue",
        cluster_name="my-cluster",
        application_id="app-1",
        execution_role_arn="arn:aws:iam::123:role/emr-job",
        session_id=session_id,
    )


@pytest.mark.parametrize(
    ("query", "lang", "sessions", "route"),
    [
        (SELECT, LangType.SQL, False, DispatchRoute.NON_INDEX_BATCH),
        (SELECT, LangType.SQL, True, DispatchRoute.NON_INDEX_SESSION),
        (DROP_SKIPPING, LangType.SQL, False, DispatchRoute.DROP_INDEX),
        (CREATE_SKIPPING, LangType.SQL, True, DispatchRoute.CREATE_INDEX),
        (DROP_SKIPPING, LangType.PPL, False, DispatchRoute.NON_INDEX_BATCH),
    ],
)
def test_plan_picks_one_route(query, lang, sessions, route):
    dispatcher, _ = _make(sessions_enabled=sessions)

    assert dispatcher.plan(_request(query, lang=lang)).route == route


def test_index_route_without_operation_is_rejected():
    with pytest.raises(ValueError, match="carries no index operation"):
        RoutePlan(DispatchRoute.DROP_INDEX).require_index_operation()


def test_index_query_starts_tagged_streaming_job():
    dispatcher, fakes = _make()

    response = dispatcher.dispatch(_request(CREATE_SKIPPING))

    assert response.query_id == "job-1"
    assert response.is_synthetic_op is False
    assert response.result_index == "query_execution_result_my_glue"
    assert response.session_id is None
    (job,) = fakes.job_client.started
    assert job.job_name == "my-cluster:index-query"
    assert job.is_structured_streaming is True
    assert "--conf spark.flint.job.type=streaming" in job.spark_submit_params
    assert job.tags == {
        "cluster": "my-cluster",
        "datasource": "my_glue",
        "index": "flint_my_glue_default_http_logs_skipping_index",
        "table": "http_logs",
        "schema": "default",
    }


def test_batch_query_starts_one_job_per_call():
    dispatcher, fakes = _make()

    first = dispatcher.dispatch(_request(SELECT))
    second = dispatcher.dispatch(_request(SELECT))

    assert (first.query_id, second.query_id) == ("job-1", "job-2")
    assert [j.job_name for j in fakes.job_client.started] == [
        "my-cluster:non-index-query",
        "my-cluster:non-index-query",
    ]
    assert fakes.job_client.started[0].tags == {
        "cluster": "my-cluster",
        "datasource": "my_glue",
    }
    assert fakes.session_manager.sessions() == []


@pytest.mark.parametrize("query", [SELECT, CREATE_SKIPPING, DROP_SKIPPING])
def test_authorization_failure_has_no_side_effects(query):
    dispatcher, fakes = _make(sessions_enabled=True, user_roles=("intruder",))

    with pytest.raises(AuthorizationError):
        dispatcher.dispatch(_request(query))

    assert fakes.job_client.started == []
    assert fakes.job_client.cancelled == []
    assert fakes.index_store.deleted == []
    assert fakes.session_manager.sessions() == []


def test_drop_index_without_auto_refresh_skips_cancel_but_deletes():
    dispatcher, fakes = _make(index_metadata=IndexMetadata(job_id="stream-1", auto_refresh=False))

    response = dispatcher.dispatch(_request(DROP_SKIPPING))

    assert fakes.job_client.cancelled == []
    assert fakes.index_store.deleted == ["flint_my_glue_default_http_logs_skipping_index"]
    assert response.is_synthetic_op is True
    assert DropIndexResult.from_job_id(response.query_id).status == "SUCCESS"


def test_drop_index_cancels_streaming_job_then_deletes():
    dispatcher, fakes = _make()

    response = dispatcher.dispatch(_request(DROP_SKIPPING))

    assert fakes.job_client.cancelled == [("app-1", "stream-1")]
    assert fakes.index_store.deleted == ["flint_my_glue_default_http_logs_skipping_index"]
    assert fakes.job_client.started == []
    assert DropIndexResult.from_job_id(response.query_id).status == "SUCCESS"


def test_drop_index_still_deletes_when_cancel_fails():
    dispatcher, fakes = _make(job_client=_JobClient(cancel_error=RuntimeError("backend down")))

    response = dispatcher.dispatch(_request(DROP_SKIPPING))

    assert fakes.job_client.cancelled == [("app-1", "stream-1")]
    assert fakes.index_store.deleted == ["flint_my_glue_default_http_logs_skipping_index"]
    assert response.is_synthetic_op is True
    assert DropIndexResult.from_job_id(response.query_id).status == "SUCCESS"


@pytest.mark.parametrize(
    "index_store",
    [
        _IndexStore(error=ConnectionError("interrupted")),
        _IndexStore(acknowledged=False),
    ],
)
def test_drop_index_reports_failure_when_delete_fails(index_store):
    dispatcher, _ = _make(index_store=index_store)

    response = dispatcher.dispatch(_request(DROP_SKIPPING))

    assert response.is_synthetic_op is True
    assert DropIndexResult.from_job_id(response.query_id).status == "FAILED"



def test_drop_index_reports_failure_when_delete_fails_after_cancel():
    calls: list[str] = []

    class _OrderedJobClient(_JobClient):
        def cancel_job_run(self, application_id, job_id):
            calls.append(f"cancel:{job_id}")
            return super().cancel_job_run(application_id, job_id)

    class _OrderedIndexStore(_IndexStore):
        def delete_index(self, index_name):
            calls.append(f"delete:{index_name}")
            return super().delete_index(index_name)

    dispatcher, _ = _make(
        job_client=_OrderedJobClient(),
        index_store=_OrderedIndexStore(error=ConnectionError("interrupted")),
    )

    response = dispatcher.dispatch(_request(DROP_SKIPPING))

    assert calls == [
        "cancel:stream-1",
        "delete:flint_my_glue_default_http_logs_skipping_index",
    ]
    assert response.is_synthetic_op is True
    assert DropIndexResult.from_job_id(response.query_id).status == "FAILED"


@pytest.mark.parametrize("sessions", [False, True])
def test_malformed_index_statement_starts_nothing(sessions):
    dispatcher, fakes = _make(sessions_enabled=sessions)

    with pytest.raises(QueryClassificationError):
        dispatcher.dispatch(_request("DROP SKIPPING INDEX ON"))

    assert fakes.job_client.started == []
    assert fakes.job_client.cancelled == []
    assert fakes.index_store.deleted == []
    assert fakes.index_metadata_reader.calls == []
    assert fakes.session_manager.sessions() == []

def test_session_mode_creates_session_and_waiting_statement():
    dispatcher, fakes = _make(sessions_enabled=True)

    response = dispatcher.dispatch(_request(SELECT))

    sessions = fakes.session_manager.sessions()
    assert len(sessions) == 1
    session = sessions[0]
    assert response.session_id == session.session_id
    assert response.is_synthetic_op is False
    statements = session.statements()
    assert len(statements) == 1
    assert statements[0].statement_id == response.query_id
    assert statements[0].state == StatementState.WAITING
    assert len(fakes.job_client.started) == 1


def test_session_mode_reuses_existing_session():
    dispatcher, fakes = _make(sessions_enabled=True)
    first = dispatcher.dispatch(_request(SELECT))

    second = dispatcher.dispatch(_request("SELECT 2", session_id=first.session_id))

    assert len(fakes.session_manager.sessions()) == 1
    assert len(fakes.job_client.started) == 1
    assert second.session_id == first.session_id
    assert fakes.job_client.status_calls == [("app-1", "job-1")]
    session = fakes.session_manager.get_session(first.session_id)
    assert [s.query for s in session.statements()] == [SELECT, "SELECT 2"]



@pytest.mark.parametrize(
    ("job_state", "session_state"),
    [("FAILED", SessionState.FAIL), ("CANCELLED", SessionState.DEAD)],
)
def test_session_mode_rejects_reuse_once_session_job_stopped(job_state, session_state):
    dispatcher, fakes = _make(sessions_enabled=True)
    first = dispatcher.dispatch(_request(SELECT))
    fakes.job_client.state = job_state

    with pytest.raises(SessionStateError):
        dispatcher.dispatch(_request("SELECT 2", session_id=first.session_id))

    session = fakes.session_manager.get_session(first.session_id)
    assert session.state == session_state
    assert [s.query for s in session.statements()] == [SELECT]
    assert len(fakes.job_client.started) == 1

def test_session_mode_unknown_session_fails_without_statement():
    dispatcher, fakes = _make(sessions_enabled=True)

    with pytest.raises(SessionNotFoundError, match="no session found"):
        dispatcher.dispatch(_request(SELECT, session_id="does-not-exist"))

    assert fakes.session_manager.sessions() == []
    assert fakes.job_client.started == []


def _session_statement(dispatcher, fakes):
    response = dispatcher.dispatch(_request(SELECT))
    session = fakes.session_manager.get_session(response.session_id)
    statement = session.get(response.query_id)
    metadata = JobMetadata(
        job_id=response.query_id,
        application_id="app-1",
        result_index=response.result_index,
        session_id=response.session_id,
    )
    return statement, metadata


def test_cancel_terminal_statement_is_a_no_op():
    dispatcher, fakes = _make(sessions_enabled=True)
    statement, metadata = _session_statement(dispatcher, fakes)
    statement.mark_running()
    statement.mark_success()

    cancelled = dispatcher.cancel(metadata)

    assert cancelled == statement.statement_id
    assert statement.state == StatementState.SUCCESS
    assert fakes.job_client.cancelled == []


def test_cancel_waiting_statement():
    dispatcher, fakes = _make(sessions_enabled=True)
    statement, metadata = _session_statement(dispatcher, fakes)

    assert dispatcher.cancel(metadata) == statement.statement_id
    statement.refresh()
    assert statement.state == StatementState.CANCELLED


def test_cancel_unknown_statement_fails():
    dispatcher, fakes = _make(sessions_enabled=True)
    _, metadata = _session_statement(dispatcher, fakes)
    missing = JobMetadata(
        job_id="missing",
        application_id="app-1",
        result_index=None,
        session_id=metadata.session_id,
    )

    with pytest.raises(StatementNotFoundError, match="no statement found"):
        dispatcher.cancel(missing)


def test_cancel_batch_job_calls_backend():
    dispatcher, fakes = _make()
    metadata = JobMetadata.from_response(dispatcher.dispatch(_request(SELECT)), "app-1")

    assert dispatcher.cancel(metadata) == "job-1"
    assert fakes.job_client.cancelled == [("app-1", "job-1")]


def test_status_prefers_result_document_over_job_state():
    reader = _ResultReader({"data": {"status": "FAILED", "error": "boom", "result": []}})
    dispatcher, fakes = _make(job_client=_JobClient(state="SUCCESS"), result_reader=reader)
    metadata = JobMetadata.from_response(dispatcher.dispatch(_request(SELECT)), "app-1")

    document = dispatcher.get_status(metadata)

    assert document["status"] == "FAILED"
    assert document["error"] == "boom"
    assert document["data"]["result"] == []
    assert fakes.job_client.status_calls == []
    assert reader.calls == [("job", "job-1", "query_execution_result_my_glue")]


def test_status_defaults_to_failed_without_status_field():
    dispatcher, _ = _make(result_reader=_ResultReader({"data": {"result": []}}))
    metadata = JobMetadata(job_id="job-9", application_id="app-1", result_index=None)

    document = dispatcher.get_status(metadata)

    assert document["status"] == "FAILED"
    assert document["error"] == ""



def test_status_keeps_error_of_result_without_status():
    reader = _ResultReader({"data": {"error": "boom"}})
    dispatcher, fakes = _make(job_client=_JobClient(state="SUCCESS"), result_reader=reader)
    metadata = JobMetadata(job_id="job-9", application_id="app-1", result_index=None)

    document = dispatcher.get_status(metadata)

    assert document["status"] == "FAILED"
    assert document["error"] == "boom"
    assert document["data"] == {"error": "boom"}
    assert fakes.job_client.status_calls == []

def test_status_of_running_streaming_job_reports_result_success():
    reader = _ResultReader({"data": {"status": "SUCCESS"}})
    dispatcher, _ = _make(job_client=_JobClient(state="RUNNING"), result_reader=reader)
    metadata = JobMetadata(job_id="job-9", application_id="app-1", result_index=None)

    assert dispatcher.get_status(metadata)["status"] == "SUCCESS"


def test_status_without_result_reports_backend_state():
    dispatcher, fakes = _make(job_client=_JobClient(state="SCHEDULED"))
    metadata = JobMetadata(job_id="job-9", application_id="app-1", result_index=None)

    document = dispatcher.get_status(metadata)

    assert document == {"status": "SCHEDULED", "error": ""}
    assert fakes.job_client.status_calls == [("app-1", "job-9")]


def test_session_status_without_result_reports_statement_state():
    dispatcher, fakes = _make(sessions_enabled=True)
    statement, metadata = _session_statement(dispatcher, fakes)
    statement.mark_running()

    document = dispatcher.get_status(metadata)

    assert document == {"status": "RUNNING", "error": ""}
    assert fakes.job_client.status_calls == []
    assert fakes.result_reader.calls == [
        ("query", statement.statement_id, "query_execution_result_my_glue")
    ]


def test_session_status_reports_statement_error():
    dispatcher, fakes = _make(sessions_enabled=True)
    statement, metadata = _session_statement(dispatcher, fakes)
    statement.mark_running()
    statement.mark_error("table not found")

    assert dispatcher.get_status(metadata) == {"status": "ERROR", "error": "table not found"}


def test_session_status_with_result_document_wins():
    reader = _ResultReader({"data": {"status": "SUCCESS"}})
    dispatcher, fakes = _make(sessions_enabled=True, result_reader=reader)
    statement, metadata = _session_statement(dispatcher, fakes)

    assert statement.state == StatementState.WAITING
    assert dispatcher.get_status(metadata)["status"] == "SUCCESS"


def test_session_status_for_unknown_session_fails():
    dispatcher, _ = _make(sessions_enabled=True)
    metadata = JobMetadata(
        job_id="stmt", application_id="app-1", result_index=None, session_id="nope"
    )

    with pytest.raises(SessionNotFoundError):
        dispatcher.get_status(metadata)


def test_drop_index_status_is_decoded_without_backend_calls():
    dispatcher, fakes = _make()
    response = dispatcher.dispatch(_request(DROP_SKIPPING))
    metadata = JobMetadata.from_response(response, "app-1")

    document = dispatcher.get_status(metadata)

    assert metadata.is_drop_index_op is True
    assert document["status"] == "SUCCESS"
    assert document["data"]["result"] == []
    assert fakes.result_reader.calls == []
    assert fakes.job_client.status_calls == []


def test_submit_into_session_keeps_request_language():
    dispatcher, fakes = _make(sessions_enabled=True)

    response = dispatcher.dispatch(
        _request("source = my_glue.default.http_logs", lang=LangType.PPL)
    )

    statement = fakes.session_manager.get_session(response.session_id).get(response.query_id)
    assert statement.lang == "PPL"
    assert statement.query == "source = my_glue.default.http_logs"
