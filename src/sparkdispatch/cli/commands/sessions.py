"""Commands for inspecting interactive sessions."""

from __future__ import annotations

import typer

from sparkdispatch.cli.common.context import DispatchAppContext, build_dispatch_context
from sparkdispatch.cli.common.exits import CLIENT_ERROR_EXIT, command_errors, die, warn_exit
from sparkdispatch.cli.common.options import ConfirmOpt, ProfileOpt, RegionOpt
from sparkdispatch.cli.common.output import out
from sparkdispatch.cli.tui import select_statements
from sparkdispatch.core.dispatcher import JobMetadata
from sparkdispatch.core.session import Session

app = typer.Typer(
    help="Inspect interactive sessions and their statements.",
    no_args_is_help=False,
    invoke_without_command=True,
)


@app.callback()
def _init(
    ctx: typer.Context,
    profile: str | None = ProfileOpt,
    region: str | None = RegionOpt,
):
    """Initialize session context."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)
    ctx.obj = build_dispatch_context(profile, region=region)


def _session_or_exit(appctx: DispatchAppContext, session_id: str) -> Session:
    session = appctx.session_manager.get_session(session_id)
    if session is None:
        die(f"no session found. {session_id}", code=CLIENT_ERROR_EXIT)
    return session


@app.command("list")
def list_sessions(ctx: typer.Context):
    """List known sessions."""
    appctx: DispatchAppContext = ctx.obj
    with command_errors():
        sessions = appctx.session_manager.sessions()

    if not sessions:
        warn_exit("No sessions found")

    with command_errors():
        out.sessions_table(sessions)


@app.command()
def show(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
):
    """Show the statements of a session."""
    appctx: DispatchAppContext = ctx.obj
    with command_errors():
        session = _session_or_exit(appctx, session_id)
        statements = session.statements()

    out.header(f"Session {session.session_id}")
    out.kv(
        {
            "dataSource": session.data_source,
            "applicationId": session.application_id,
            "jobId": session.job_id,
            "state": session.state.value,
        }
    )
    out.statements_table(statements)


@app.command()
def cancel(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session id"),
    confirm: bool = ConfirmOpt,
):
    """Pick statements of a session and cancel them."""
    appctx: DispatchAppContext = ctx.obj
    with command_errors():
        session = _session_or_exit(appctx, session_id)
        pending = [s for s in session.statements() if not s.state.is_terminal]
    if not pending:
        warn_exit("No waiting or running statements")

    selected = select_statements(pending)
    if not selected:
        warn_exit("No statements selected")

    out.statements_table(selected, title="Selected")
    if confirm and not out.confirm("Cancel the selected statements?"):
        out.info("Cancelled")
        raise typer.Exit(0)

    with command_errors():
        for statement in selected:
            appctx.dispatcher.cancel(
                JobMetadata(
                    job_id=statement.statement_id,
                    application_id=session.application_id,
                    result_index=None,
                    session_id=session.session_id,
                )
            )

    out.success(f"Statements cancelled: {len(selected)}")
