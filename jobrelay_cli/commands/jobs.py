"""Jobs Commands - Create, inspect and cancel jobs"""

import json
import time

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobRelayClient, JobRelayError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="jobs", help="Job submission and monitoring commands")

TERMINAL_STATUSES = {"completed", "failed", "cancelled"}


def _parse_payload(payload: str | None) -> dict:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)
    return data


@app.command("create")
def create_job(
    type: str = typer.Argument(..., help="Job type (e.g. email:send)"),
    payload: str | None = typer.Option(
        None, "--payload", "-p", help="Job payload as a JSON object"
    ),
    idempotency_key: str | None = typer.Option(
        None, "--key", "-k", help="Idempotency key"
    ),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", "-m", min=1, help="Retry ceiling"
    ),
):
    """🚀 Create a new job"""
    base_url = config.get("api.base_url")
    data = _parse_payload(payload)

    try:
        with JobRelayClient(base_url) as client:
            job = client.create_job(
                type=type,
                payload=data,
                idempotency_key=idempotency_key,
                max_attempts=max_attempts,
            )

        print_success(f"Job {job.get('id')} is {job.get('status')}")
        console.print(create_job_panel(job, show_payload=False))

    except JobRelayError as e:
        print_error(f"Failed to create job: {e}")
        raise typer.Exit(1) from None


@app.command("get")
def get_job(
    job_id: str = typer.Argument(..., help="Job ID to show"),
    watch: bool = typer.Option(
        False, "--watch", "-w", help="Poll until the job reaches a terminal state"
    ),
):
    """🔍 Show a job"""
    base_url = config.get("api.base_url")
    interval = float(config.get("jobs.watch_interval_s", 2))
    show_payload = bool(config.get("display.show_payloads", False))

    try:
        with JobRelayClient(base_url) as client:
            job = client.get_job(job_id)
            while watch and job.get("status") not in TERMINAL_STATUSES:
                print_info(f"Status: {job.get('status')} (attempts {job.get('attempts')})")
                time.sleep(interval)
                job = client.get_job(job_id)

        console.print(create_job_panel(job, show_payload=show_payload))

    except JobRelayError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("list")
def list_jobs(
    status: str | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List your jobs"""
    base_url = config.get("api.base_url")

    try:
        with JobRelayClient(base_url) as client:
            data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)

        jobs = data.get("jobs", [])
        total = data.get("total", len(jobs))

        if not jobs:
            console.print(Panel(
                "📭 [yellow]No jobs found![/yellow]\n\n"
                f"Filters applied:\n"
                f"• Status: {status or 'any'}\n"
                f"• Type: {type or 'any'}",
                title="Empty Results",
                border_style="yellow"
            ))
            return

        console.print(create_jobs_table(jobs))
        console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")

        if offset + limit < total:
            console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except JobRelayError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("cancel")
def cancel_job(
    job_id: str = typer.Argument(..., help="Job ID to cancel"),
):
    """🛑 Cancel a pending or processing job"""
    base_url = config.get("api.base_url")

    try:
        with JobRelayClient(base_url) as client:
            result = client.cancel_job(job_id)

    except JobRelayError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None

    if result.get("success"):
        print_success(f"Job {job_id} cancelled")
    else:
        print_warning(f"Job {job_id} is already finished and cannot be cancelled")
        raise typer.Exit(1)


@app.command("stats")
def job_stats():
    """📊 Show job statistics and queue depth"""
    base_url = config.get("api.base_url")

    try:
        with JobRelayClient(base_url) as client:
            stats = client.job_stats()

        console.print(create_stats_panel(stats))

    except JobRelayError as e:
        print_error(f"Failed to get job statistics: {e}")
        raise typer.Exit(1) from None
