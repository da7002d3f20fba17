"""Common CLI options for the CLI."""

import typer

ProfileOpt = typer.Option(
    None,
    "--profile",
    "-p",
    help="AWS profile (from ~/.aws/config)",
)

RegionOpt = typer.Option(
    None,
    "--region",
    help="AWS region of the EMR Serverless application",
)

ApplicationIdOpt = typer.Option(
    ...,
    "--application-id",
    "-a",
    help="EMR Serverless application id",
)

SessionIdOpt = typer.Option(
    None,
    "--session-id",
    "-s",
    help="Interactive session id",
)

ResultIndexOpt = typer.Option(
    None,
    "--result-index",
    help="Result index (defaults to the configured result index)",
)

RoleOpt = typer.Option(
    [],
    "--role",
    help="Backend role of the current user. This is reusable.",
    show_default=False,
)

AdminOpt = typer.Option(
    False,
    "--admin",
    help="Skip data source role checks",
)

ConfirmOpt = typer.Option(
    True,
    "--confirm/--no-confirm",
    help="Ask for confirmation before cancelling",
)
