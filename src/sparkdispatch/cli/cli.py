"""CLI application for dispatching queries to serverless Spark."""

import typer

from sparkdispatch.cli.commands.queries import app as query_app
from sparkdispatch.cli.commands.sessions import app as sessions_app

app = typer.Typer(
    help="sparkdispatch - dispatch queries to serverless Spark",
    no_args_is_help=True,
)

app.add_typer(query_app, name="query", help="Submit / poll / cancel queries.")
app.add_typer(sessions_app, name="sessions")


if __name__ == "__main__":
    app()
