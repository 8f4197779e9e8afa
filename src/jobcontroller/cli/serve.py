"""
CLI: ``jobcontroller serve`` -- run the controller with its REST API.
"""

from __future__ import annotations

from pathlib import Path

import typer
import uvicorn

from jobcontroller.cli.utils import console, err_console
from jobcontroller.core.errors import ConfigError
from jobcontroller.core.logging import configure_logging
from jobcontroller.core.settings import load_settings


def serve(
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML settings file", exists=True),
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port"),
) -> None:
    """Start the reconciliation loop, the ack consumer and the REST API."""
    overrides = {key: value for key, value in {"api_host": host, "api_port": port}.items() if value is not None}
    try:
        settings = load_settings(config, **overrides)
    except ConfigError as e:
        err_console.print(f"[bold red]Invalid configuration[/bold red]: {e.message}")
        raise typer.Exit(code=2) from e

    configure_logging(
        level=settings.log_level,
        json_format=settings.log_format == "json",
        controller_version=settings.controller_version,
    )

    from jobcontroller.api.app import create_app

    app = create_app(settings=settings)
    console.print(
        f"[bold green]Starting jobcontroller {settings.controller_version}[/bold green] "
        f"on {settings.api_host}:{settings.api_port}"
    )
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


def check_config(
    config: Path | None = typer.Option(None, "--config", "-c", help="YAML settings file", exists=True),
) -> None:
    """Validate settings and print the effective configuration."""
    try:
        settings = load_settings(config)
    except ConfigError as e:
        err_console.print(f"[bold red]Invalid configuration[/bold red]: {e.message}")
        raise typer.Exit(code=2) from e
    console.print_json(settings.model_dump_json())
