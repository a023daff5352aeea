"""Rich Formatting Utilities for CLI Output"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}

STATUS_ICONS = {
    "pending": "⏳",
    "processing": "⚙️",
    "completed": "✅",
    "failed": "❌",
    "cancelled": "🚫",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"{STATUS_ICONS.get(status, '•')} [{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a jobs list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="left")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Created", justify="left", style="blue")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],  # Short ID
            job.get("type", ""),
            format_status(job.get("status", "")),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            str(job.get("created_at", "—"))[:19],
        )

    return table


def create_job_panel(job: dict[str, Any], show_payload: bool = True) -> Panel:
    """Create formatted panel with the details of one job"""
    lines = [
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id', 'unknown')}[/cyan]",
        f"📝 [bold]Type:[/bold] [magenta]{job.get('type', 'unknown')}[/magenta]",
        f"📌 [bold]Status:[/bold] {format_status(job.get('status', 'unknown'))}",
        f"🔁 [bold]Attempts:[/bold] [yellow]{job.get('attempts', 0)}/{job.get('max_attempts', 0)}[/yellow]",
        f"📅 [bold]Created:[/bold] [blue]{job.get('created_at', '—')}[/blue]",
    ]

    for label, field in (
        ("Started", "started_at"),
        ("Completed", "completed_at"),
        ("Failed", "failed_at"),
    ):
        if job.get(field):
            lines.append(f"⏱️ [bold]{label}:[/bold] [blue]{job[field]}[/blue]")

    if job.get("error"):
        lines.append(f"\n[bold red]Error:[/bold red] {job['error']}")
    if job.get("result") is not None:
        lines.append(f"\n[bold green]Result:[/bold green]\n{_pretty(job['result'])}")
    if show_payload:
        lines.append(f"\n[bold]Payload:[/bold]\n{_pretty(job.get('payload', {}))}")

    return Panel(
        "\n".join(lines),
        title="Job Details",
        border_style=STATUS_STYLES.get(job.get("status", ""), "blue"),
    )


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for job statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"• {format_status(status)}: [cyan]{count}[/cyan]"
        for status, count in by_status.items()
    )
    type_lines = "\n".join(
        f"• [magenta]{job_type}[/magenta]: [cyan]{count}[/cyan]"
        for job_type, count in stats.get("by_type", {}).items()
    ) or "• [dim]none[/dim]"

    queue_lines = "\n".join(
        f"• [magenta]{job_type}[/magenta]: "
        f"waiting [yellow]{counts.get('waiting', 0) + counts.get('delayed', 0)}[/yellow], "
        f"active [blue]{counts.get('active', 0)}[/blue], "
        f"failed [red]{counts.get('failed', 0)}[/red]"
        for job_type, counts in stats.get("queues", {}).items()
    ) or "• [dim]no queues[/dim]"

    content = (
        f"📊 [bold blue]Jobs[/bold blue]\n\n"
        f"• Total: [green]{stats.get('total_jobs', 0)}[/green]\n"
        f"• Active: [yellow]{stats.get('active', 0)}[/yellow]\n\n"
        f"[bold]By status[/bold]\n{status_lines}\n\n"
        f"[bold]By type[/bold]\n{type_lines}\n\n"
        f"[bold]Queues[/bold]\n{queue_lines}"
    )
    return Panel(content, title="Job Statistics", border_style="green")


def _pretty(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True, default=str)
