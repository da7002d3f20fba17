"""Commands for submitting, polling and cancelling queries."""

from __future__ import annotations

import typer

from sparkdispatch.cli.common.context import DispatchAppContext, build_dispatch_context
from sparkdispatch.cli.common.exits import command_errors
from sparkdispatch.cli.common.options import (
    AdminOpt,
    ApplicationIdOpt,
    ConfirmOpt,
    ProfileOpt,
    RegionOpt,
    ResultIndexOpt,
    RoleOpt,
    SessionIdOpt,
)
from sparkdispatch.cli.common.output import out
from sparkdispatch.core.dispatcher import DispatchRequest, JobMetadata, LangType

app = typer.Typer(
    help="Submit, poll and cancel queries.",
    no_args_is_help=False,
    invoke_without_command=True,
)


@app.callback()
def _init(
    ctx: typer.Context,
    profile: str | None = ProfileOpt,
    region: str | None = RegionOpt,
    role: list[str] = RoleOpt,
    admin: bool = AdminOpt,
    sessions: bool | None = typer.Option(
        None,
        "--sessions/--no-sessions",
        help="Override SPARKDISPATCH_SESSIONS_ENABLED",
        show_default=False,
    ),
):
    """Initialize dispatch context."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)
    ctx.obj = build_dispatch_context(
        profile,
        region=region,
        user_roles=role,
        is_admin=admin,
        sessions_enabled=sessions,
    )


@app.command()
def submit(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Query text"),
    datasource: str = typer.Option(..., "--datasource", "-d", help="Data source name"),
    cluster: str = typer.Option(..., "--cluster", "-c", help="Cluster name used in job tags"),
    application_id: str = ApplicationIdOpt,
    role_arn: str = typer.Option(..., "--role-arn", help="Execution role ARN"),
    lang: LangType = typer.Option(LangType.SQL, "--lang", case_sensitive=False),
    session_id: str | None = SessionIdOpt,
    spark_params: str | None = typer.Option(
        None, "--spark-params", help="Extra spark-submit parameters"
    ),
):
    """
    Dispatch a query to the Spark backend.
    """
    appctx: DispatchAppContext = ctx.obj
    request = DispatchRequest(
        query=query,
        lang=lang,
        data_source=datasource,
        cluster_name=cluster,
        application_id=application_id,
        execution_role_arn=role_arn,
        session_id=session_id,
        extra_spark_submit_params=spark_params,
    )

    with command_errors(), out.status("Dispatching query..."):
        response = appctx.dispatcher.dispatch(request)

    out.success("Query dispatched")
    out.kv(
        {
            "queryId": response.query_id,
            "sessionId": response.session_id,
            "resultIndex": response.result_index,
            "dropIndex": response.is_synthetic_op,
        }
    )


def _metadata(
    query_id: str,
    application_id: str,
    result_index: str | None,
    session_id: str | None,
    drop_index: bool,
) -> JobMetadata:
    return JobMetadata(
        job_id=query_id,
        application_id=application_id,
        result_index=result_index,
        session_id=session_id,
        is_drop_index_op=drop_index,
    )


@app.command()
def status(
    ctx: typer.Context,
    query_id: str = typer.Argument(..., help="Query id returned by submit"),
    application_id: str = ApplicationIdOpt,
    result_index: str | None = ResultIndexOpt,
    session_id: str | None = SessionIdOpt,
    drop_index: bool = typer.Option(
        False, "--drop-index", help="The query id belongs to a drop-index operation"
    ),
):
    """
    Show the status of a dispatched query.
    """
    appctx: DispatchAppContext = ctx.obj
    metadata = _metadata(query_id, application_id, result_index, session_id, drop_index)

    with command_errors(), out.status("Loading status..."):
        document = appctx.dispatcher.get_status(metadata)

    out.status_document(document)


@app.command()
def cancel(
    ctx: typer.Context,
    query_id: str = typer.Argument(..., help="Query id returned by submit"),
    application_id: str = ApplicationIdOpt,
    session_id: str | None = SessionIdOpt,
    confirm: bool = ConfirmOpt,
):
    """
    Cancel a dispatched query.
    """
    appctx: DispatchAppContext = ctx.obj
    metadata = _metadata(query_id, application_id, None, session_id, False)

    if confirm and not out.confirm(f"Cancel query {query_id}?"):
        out.info("Cancelled")
        raise typer.Exit(0)

    with command_errors(), out.status("Cancelling query..."):
        cancelled = appctx.dispatcher.cancel(metadata)

    out.success(f"Cancel requested: {cancelled}")
