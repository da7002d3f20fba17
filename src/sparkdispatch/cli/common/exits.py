"""Exit handling for the CLI.

Failures are split in two groups: the request itself is wrong (unknown
data source, session or statement, missing role, malformed statement),
exit code 2; a backend (EMR Serverless or OpenSearch) failed, exit code 1.
"""

from contextlib import contextmanager
from typing import Iterator, NoReturn

import typer
from botocore.exceptions import BotoCoreError, ClientError
from opensearchpy.exceptions import OpenSearchException

from sparkdispatch.cli.common.output import out
from sparkdispatch.core.datasources import AuthorizationError
from sparkdispatch.core.session import SessionStateError

CLIENT_ERROR_EXIT = 2
BACKEND_ERROR_EXIT = 1

# LookupError covers unknown data sources, sessions, statements and indexes;
# ValueError covers malformed statements, ids and transitions.
CLIENT_ERRORS = (LookupError, ValueError, AuthorizationError, SessionStateError)
BACKEND_ERRORS = (ClientError, BotoCoreError, OpenSearchException)


def die(msg: str, code: int = BACKEND_ERROR_EXIT) -> NoReturn:
    """Print an error and exit with `code`."""
    out.error(msg)
    raise typer.Exit(code)


def warn_exit(msg: str) -> NoReturn:
    """Print a warning and exit successfully; nothing was left to do."""
    out.warn(msg)
    raise typer.Exit(0)


def exit_code_for(exc: Exception) -> int:
    """Return the exit code reported for a failed command."""
    if isinstance(exc, CLIENT_ERRORS):
        return CLIENT_ERROR_EXIT
    return BACKEND_ERROR_EXIT


def exit_from_exc(exc: Exception) -> NoReturn:
    """Report `exc` and exit with its exit code, chaining the original exception."""
    code = exit_code_for(exc)
    if code == CLIENT_ERROR_EXIT:
        out.error(str(exc))
    else:
        out.error(f"Backend request failed: {exc}")
    raise typer.Exit(code) from exc


@contextmanager
def command_errors() -> Iterator[None]:
    """Turn request and backend failures raised inside the block into CLI exits."""
    try:
        yield
    except (*CLIENT_ERRORS, *BACKEND_ERRORS) as exc:
        exit_from_exc(exc)
