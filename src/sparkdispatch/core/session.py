"""Interactive sessions and the statements submitted into them.

A session is a long-running Spark job (the session-serving program) that
picks up statements one by one. Sessions and statements are documents in
a per data source request index (`.query_execution_request_<datasource>`),
which is the contract between this package and the session program:

- the session job is started with `spark.flint.job.sessionId` and
  `spark.flint.job.requestIndex` pointing at its session document;
- statements are documents with `type=statement`, the owning `sessionId`
  and `state=WAITING`; the program searches for them in `submitTime`
  order;
- every state change, from this package or from the program, is a
  conditional update on the document's `_seq_no`/`_primary_term`.

Statements move through a small state machine:

    WAITING -> RUNNING -> SUCCESS | ERROR | CANCELLED
    WAITING -> CANCELLED

The session program drives WAITING -> RUNNING -> SUCCESS/ERROR (the
`mark_running`, `mark_success` and `mark_error` methods implement the same
writes); callers may `cancel` at any time. A cancel racing with the
program resolves to whichever conditional update lands first, and a
terminal state is never left again.

Statement documents are only ever created, never overwritten or deleted,
so a session's statement set is append-only.
"""

from __future__ import annotations

import base64
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, NewType, Protocol

from sparkdispatch.core.jobs import JobClient, JobRunState, StartJobRequest
from sparkdispatch.core.logging import get_logger
from sparkdispatch.core.submit import FLINT_SESSION_CLASS_NAME, SparkSubmitParameters

logger = get_logger(__name__)

SessionId = NewType("SessionId", str)
StatementId = NewType("StatementId", str)

# The session job needs a query argument; the real work arrives as statements.
SESSION_BOOTSTRAP_QUERY = "select 1"

REQUEST_INDEX_PREFIX = ".query_execution_request_"
DOCUMENT_VERSION = "1.0"

TYPE_FIELD = "type"
SESSION_TYPE = "session"
STATEMENT_TYPE = "statement"
SESSION_ID_FIELD = "sessionId"
STATEMENT_ID_FIELD = "statementId"
STATE_FIELD = "state"
ERROR_FIELD = "error"
SUBMIT_TIME_FIELD = "submitTime"
LAST_UPDATE_TIME_FIELD = "lastUpdateTime"


def request_index_name(data_source: str) -> str:
    """Return the request index holding the sessions of a data source."""
    return f"{REQUEST_INDEX_PREFIX}{data_source}".lower()


class SessionNotFoundError(LookupError):
    """Raised when a session id does not resolve to a session."""


class StatementNotFoundError(LookupError):
    """Raised when a statement id does not resolve within its session."""


class SessionStateError(RuntimeError):
    """Raised when a statement is submitted into a session that has ended."""


class InvalidStatementTransition(ValueError):
    """Raised for a statement transition the state machine does not allow."""


def _new_id(data_source: str) -> str:
    raw = f"{data_source}:{uuid.uuid4().hex}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def new_session_id(data_source: str) -> SessionId:
    """Generate a unique session id that records its data source."""
    return SessionId(_new_id(data_source))


def new_statement_id(data_source: str) -> StatementId:
    """Generate a unique statement id; it doubles as the query id of the result."""
    return StatementId(_new_id(data_source))


def data_source_of(opaque_id: str) -> str:
    """
    Return the data source recorded in a session or statement id.

    Raises:
        ValueError: If the id was not generated by this module.
    """
    raw = base64.urlsafe_b64decode(opaque_id.encode("ascii")).decode("utf-8")
    data_source, sep, _ = raw.rpartition(":")
    if not sep or not data_source:
        raise ValueError(f"Invalid id: '{opaque_id}'")
    return data_source


def _now_millis() -> int:
    return int(time.time() * 1000)


class StatementState(str, Enum):
    WAITING = "WAITING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATEMENT_STATES


_TERMINAL_STATEMENT_STATES = frozenset(
    {StatementState.SUCCESS, StatementState.ERROR, StatementState.CANCELLED}
)

_ALLOWED_TRANSITIONS: dict[StatementState, frozenset[StatementState]] = {
    StatementState.WAITING: frozenset({StatementState.RUNNING, StatementState.CANCELLED}),
    StatementState.RUNNING: frozenset(
        {StatementState.SUCCESS, StatementState.ERROR, StatementState.CANCELLED}
    ),
    StatementState.SUCCESS: frozenset(),
    StatementState.ERROR: frozenset(),
    StatementState.CANCELLED: frozenset(),
}


class SessionState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    DEAD = "DEAD"
    FAIL = "FAIL"

    @property
    def accepts_statements(self) -> bool:
        return self in (SessionState.NOT_STARTED, SessionState.RUNNING)


# Session job states that end the session.
_ENDED_BY_JOB_STATE = {
    JobRunState.SUCCESS.value: SessionState.DEAD,
    JobRunState.CANCELLING.value: SessionState.DEAD,
    JobRunState.CANCELLED.value: SessionState.DEAD,
    JobRunState.FAILED.value: SessionState.FAIL,
}


@dataclass(frozen=True)
class StoredDocument:
    """A request index document together with its concurrency-control version."""

    doc_id: str
    source: Mapping[str, Any]
    seq_no: int
    primary_term: int


class StateStore(Protocol):
    """Interface for the request index holding session and statement documents."""

    def create(
        self, data_source: str, doc_id: str, source: Mapping[str, Any]
    ) -> StoredDocument:
        """Create a document; fails if `doc_id` already exists."""
        ...

    def get(self, data_source: str, doc_id: str) -> StoredDocument | None:
        ...

    def update_if_unchanged(
        self, data_source: str, document: StoredDocument, changes: Mapping[str, Any]
    ) -> StoredDocument | None:
        """Apply `changes` if the document is still at `document`'s version; None otherwise."""
        ...

    def find(self, data_source: str | None, **terms: str) -> list[StoredDocument]:
        """Return documents matching all `terms` in submission order (all data sources if None)."""
        ...


@dataclass(frozen=True)
class QueryRequest:
    """A query to run inside a session."""

    lang: str
    query: str


class Statement:
    """One query submitted into a session, backed by its statement document."""

    def __init__(self, store: StateStore, data_source: str, document: StoredDocument):
        self._store = store
        self.data_source = data_source
        self._document = document

    @property
    def statement_id(self) -> StatementId:
        return StatementId(self._document.doc_id)

    @property
    def session_id(self) -> SessionId:
        return SessionId(self._document.source[SESSION_ID_FIELD])

    @property
    def lang(self) -> str:
        return str(self._document.source.get("lang") or "SQL")

    @property
    def query(self) -> str:
        return str(self._document.source.get("query") or "")

    @property
    def state(self) -> StatementState:
        return StatementState(self._document.source[STATE_FIELD])

    @property
    def error(self) -> str:
        return str(self._document.source.get(ERROR_FIELD) or "")

    def refresh(self) -> None:
        """Re-read the statement document."""
        document = self._store.get(self.data_source, self._document.doc_id)
        if document is None:
            raise StatementNotFoundError(f"no statement found. {self.statement_id}")
        self._document = document

    def compare_and_set(
        self,
        expected: StatementState,
        new: StatementState,
        error: str = "",
    ) -> bool:
        """
        Move from `expected` to `new` if the statement is still in `expected`.

        The write is conditional on the document version last read; when
        another writer got there first the statement is re-read.

        Returns:
            True if the transition was applied, False if the state had
            already changed.

        Raises:
            InvalidStatementTransition: If `expected -> new` is not allowed.
        """
        if new not in _ALLOWED_TRANSITIONS[expected]:
            raise InvalidStatementTransition(
                f"Statement {self.statement_id}: {expected.value} -> {new.value} is not allowed."
            )
        current = self._document
        if StatementState(current.source[STATE_FIELD]) != expected:
            return False
        updated = self._store.update_if_unchanged(
            self.data_source,
            current,
            {STATE_FIELD: new.value, ERROR_FIELD: error, LAST_UPDATE_TIME_FIELD: _now_millis()},
        )
        if updated is None:
            self.refresh()
            return False
        self._document = updated
        return True

    def _advance(self, new: StatementState, error: str = "") -> bool:
        """Apply `new` from whatever non-terminal state the statement is in."""
        while True:
            current = self.state
            if current.is_terminal:
                return False
            if self.compare_and_set(current, new, error):
                return True

    def cancel(self) -> None:
        """Cancel the statement; a no-op once it has reached a terminal state."""
        if self._advance(StatementState.CANCELLED):
            logger.info(
                "statement_cancelled",
                session_id=self.session_id,
                statement_id=self.statement_id,
            )

    def mark_running(self) -> bool:
        """Record that the session program picked the statement up."""
        return self._advance(StatementState.RUNNING)

    def mark_success(self) -> bool:
        """Record that the statement finished and its result was written."""
        return self._advance(StatementState.SUCCESS)

    def mark_error(self, message: str) -> bool:
        """Record that the statement failed with `message`."""
        return self._advance(StatementState.ERROR, message)

    def __repr__(self) -> str:
        return f"Statement(id={self.statement_id!r}, state={self.state.value})"


class Session:
    """An interactive execution context backed by one remote job."""

    def __init__(self, store: StateStore, document: StoredDocument):
        self._store = store
        self._document = document

    @property
    def session_id(self) -> SessionId:
        return SessionId(self._document.doc_id)

    @property
    def data_source(self) -> str:
        return str(self._document.source["dataSourceName"])

    @property
    def application_id(self) -> str:
        return str(self._document.source.get("applicationId") or "")

    @property
    def job_id(self) -> str | None:
        return self._document.source.get("jobId")

    @property
    def state(self) -> SessionState:
        return SessionState(self._document.source[STATE_FIELD])

    def submit(self, request: QueryRequest) -> StatementId:
        """Create a WAITING statement document for `request` and return its id."""
        if not self.state.accepts_statements:
            raise SessionStateError(
                f"Can't submit statement, session {self.session_id} is {self.state.value}."
            )
        statement_id = new_statement_id(self.data_source)
        now = _now_millis()
        self._store.create(
            self.data_source,
            statement_id,
            {
                "version": DOCUMENT_VERSION,
                TYPE_FIELD: STATEMENT_TYPE,
                STATEMENT_ID_FIELD: statement_id,
                SESSION_ID_FIELD: self.session_id,
                "queryId": statement_id,
                "applicationId": self.application_id,
                "jobId": self.job_id,
                "dataSourceName": self.data_source,
                "lang": request.lang,
                "query": request.query,
                STATE_FIELD: StatementState.WAITING.value,
                ERROR_FIELD: "",
                SUBMIT_TIME_FIELD: now,
                LAST_UPDATE_TIME_FIELD: now,
            },
        )
        logger.info(
            "statement_submitted",
            session_id=self.session_id,
            statement_id=statement_id,
        )
        return statement_id

    def get(self, statement_id: str) -> Statement | None:
        """Return the statement with `statement_id`, or None."""
        document = self._store.get(self.data_source, statement_id)
        if document is None:
            return None
        if document.source.get(TYPE_FIELD) != STATEMENT_TYPE:
            return None
        if document.source.get(SESSION_ID_FIELD) != self.session_id:
            return None
        return Statement(self._store, self.data_source, document)

    def statements(self) -> list[Statement]:
        """Return the statements in submission order."""
        documents = self._store.find(
            self.data_source, **{TYPE_FIELD: STATEMENT_TYPE, SESSION_ID_FIELD: self.session_id}
        )
        return [Statement(self._store, self.data_source, d) for d in documents]

    def next_waiting(self) -> Statement | None:
        """Return the oldest WAITING statement for the session program to run."""
        for statement in self.statements():
            if statement.state == StatementState.WAITING:
                return statement
        return None

    def transition(self, new: SessionState) -> bool:
        """
        Move the session to `new` unless it already ended.

        Returns:
            True if the session document was updated.
        """
        while self.state not in (SessionState.DEAD, SessionState.FAIL):
            if self.state == new:
                return False
            updated = self._store.update_if_unchanged(
                self.data_source,
                self._document,
                {STATE_FIELD: new.value, LAST_UPDATE_TIME_FIELD: _now_millis()},
            )
            if updated is not None:
                self._document = updated
                return True
            self.refresh()
        return False

    def refresh(self) -> None:
        """Re-read the session document."""
        document = self._store.get(self.data_source, self._document.doc_id)
        if document is None:
            raise SessionNotFoundError(f"no session found. {self.session_id}")
        self._document = document

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, state={self.state.value})"


@dataclass
class CreateSessionRequest:
    """Parameters for starting the job that serves a new session."""

    job_name: str
    application_id: str
    execution_role_arn: str
    spark_submit_params: SparkSubmitParameters
    tags: Mapping[str, str] = field(default_factory=dict)
    result_index: str | None = None
    data_source_name: str = ""


class SessionManager:
    """Create, look up and reconcile sessions stored in the request index."""

    def __init__(self, job_client: JobClient, store: StateStore):
        self.job_client = job_client
        self.store = store

    def create_session(self, request: CreateSessionRequest) -> Session:
        """
        Start the session-serving job and store the new session.

        The session document is only written once the job was started, so
        a backend failure leaves no session behind.
        """
        data_source = request.data_source_name
        session_id = new_session_id(data_source)
        params = (
            request.spark_submit_params.with_class_name(FLINT_SESSION_CLASS_NAME)
            .session_id(session_id)
            .request_index(request_index_name(data_source))
            .render()
        )
        job_id = self.job_client.start_job_run(
            StartJobRequest(
                query=SESSION_BOOTSTRAP_QUERY,
                job_name=request.job_name,
                application_id=request.application_id,
                execution_role_arn=request.execution_role_arn,
                spark_submit_params=params,
                tags=dict(request.tags),
                is_structured_streaming=False,
                result_index=request.result_index,
            )
        )
        now = _now_millis()
        document = self.store.create(
            data_source,
            session_id,
            {
                "version": DOCUMENT_VERSION,
                TYPE_FIELD: SESSION_TYPE,
                "sessionType": "interactive",
                SESSION_ID_FIELD: session_id,
                "applicationId": request.application_id,
                "jobId": job_id,
                "dataSourceName": data_source,
                STATE_FIELD: SessionState.NOT_STARTED.value,
                ERROR_FIELD: "",
                SUBMIT_TIME_FIELD: now,
                LAST_UPDATE_TIME_FIELD: now,
            },
        )
        logger.info(
            "session_created",
            session_id=session_id,
            job_id=job_id,
            data_source=data_source,
        )
        return Session(self.store, document)

    def get_session(self, session_id: str) -> Session | None:
        """Return the session with `session_id`, or None."""
        try:
            data_source = data_source_of(session_id)
        except ValueError:
            return None
        document = self.store.get(data_source, session_id)
        if document is None or document.source.get(TYPE_FIELD) != SESSION_TYPE:
            return None
        return Session(self.store, document)

    def sessions(self, data_source: str | None = None) -> list[Session]:
        """Return the stored sessions, optionally of one data source."""
        documents = self.store.find(data_source, **{TYPE_FIELD: SESSION_TYPE})
        return [Session(self.store, d) for d in documents]

    def reconcile(self, session: Session) -> SessionState:
        """
        End `session` when its backing job has terminated.

        The session program reports its own progress; this only catches
        jobs that stopped without saying so.
        """
        if not session.state.accepts_statements or not session.job_id:
            return session.state
        job_run = self.job_client.get_job_run(session.application_id, session.job_id)
        ended = _ENDED_BY_JOB_STATE.get(job_run.state.upper())
        if ended is not None and session.transition(ended):
            logger.warning(
                "session_ended",
                session_id=session.session_id,
                job_id=session.job_id,
                job_state=job_run.state,
                state=ended.value,
            )
        return session.state
