"""
Root Typer application for the jobcontroller CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from jobcontroller import __version__
from jobcontroller.cli.jobs import app as jobs_app
from jobcontroller.cli.serve import check_config, serve

app = Typer(
    name="jobcontroller",
    help="jobcontroller -- keeps streaming ingestion jobs in sync with the feature catalog.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"jobcontroller {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """jobcontroller CLI -- run the controller and manage its jobs."""


app.command("serve")(serve)
app.command("check-config")(check_config)
app.add_typer(jobs_app, name="jobs", help="Inspect and restart jobs.")
