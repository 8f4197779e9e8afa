"""
CLI utility helpers -- API client and output formatting.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
import typer
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

DEFAULT_API_URL = "http://localhost:12100/api/v1"


def api_request(method: str, url: str, path: str, **kwargs: Any) -> dict[str, Any]:
    """Call the controller API and return the decoded body.

    Problem responses and connection failures are printed and end the
    command with exit code 1.
    """
    try:
        with httpx.Client(base_url=url.rstrip("/"), timeout=10.0) as client:
            response = client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
        err_console.print(f"[bold red]Error[/bold red]: cannot reach {url}: {e}")
        raise typer.Exit(code=1) from e

    if response.is_error:
        try:
            problem = response.json()
            detail = problem.get("detail") or problem.get("title") or response.text
        except ValueError:
            detail = response.text
        err_console.print(f"[bold red]Error[/bold red] ({response.status_code}): {detail}")
        raise typer.Exit(code=1)
    return response.json()


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_table(items: list[dict[str, Any]], *, title: str = "", columns: list[str] | None = None) -> None:
    """Render a list of dicts as a Rich table."""
    if not items:
        console.print("[dim]No items.[/dim]")
        return
    columns = columns or list(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for column in columns:
        table.add_column(column, overflow="fold")
    for item in items:
        table.add_row(*[_cell(item.get(column)) for column in columns])
    console.print(table)


def print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a dict as a two-column key/value table."""
    table = Table(title=title or None, show_header=False, pad_edge=False)
    table.add_column("key", style="bold")
    table.add_column("value", overflow="fold")
    for key, value in data.items():
        table.add_row(key, _cell(value))
    console.print(table)


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    return str(value)
