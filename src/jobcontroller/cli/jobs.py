"""
CLI: ``jobcontroller jobs`` -- inspect and restart jobs through the API.
"""

from __future__ import annotations

import typer

from jobcontroller.cli.utils import DEFAULT_API_URL, api_request, console, print_dict, print_json, print_table

app = typer.Typer(no_args_is_help=True)

URL_OPTION = typer.Option(DEFAULT_API_URL, "--url", "-u", envvar="JOBCONTROLLER_URL", help="API base URL")

SUMMARY_COLUMNS = ["id", "status", "source_topic", "stores", "feature_sets", "controller_version"]


@app.command("list")
def list_jobs(
    status: str | None = typer.Option(None, "--status", "-s", help="RUNNING, ABORTING or ABORTED"),
    url: str = URL_OPTION,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List controller-managed jobs."""
    params = {"status": status.upper()} if status else {}
    body = api_request("GET", url, "/jobs", params=params)
    if json_out:
        print_json(body)
        return
    print_table(body["data"], title="Jobs", columns=SUMMARY_COLUMNS)
    page = body.get("page", {})
    if page:
        console.print(f"\n[dim]Showing {len(body['data'])} of {page.get('total')}[/dim]")


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    url: str = URL_OPTION,
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a job with its delivery statuses."""
    body = api_request("GET", url, f"/jobs/{job_id}")
    if json_out:
        print_json(body)
        return
    job = dict(body["data"])
    deliveries = job.pop("delivery_statuses", {})
    print_dict(job, title=f"Job: {job_id}")
    print_table(
        [{"feature_set": reference, **entry} for reference, entry in sorted(deliveries.items())],
        title="Delivery statuses",
    )


@app.command("restart")
def restart_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    url: str = URL_OPTION,
) -> None:
    """Force a replacement of a running job on the next tick."""
    api_request("POST", url, f"/jobs/{job_id}/restart")
    console.print(f"[bold green]Restart requested[/bold green] for {job_id}")
