"""JobRelay CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import JobRelayClient, JobRelayError
from .commands import config, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="jobrelay",
    help="🛰️ JobRelay - Asynchronous job orchestration CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API status and connectivity"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobRelayClient(base_url) as client:
            health = client.health_check()

    except JobRelayError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the JobRelay API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"You can update the API URL with:\n"
            f"[cyan]jobrelay config set api.base_url <url>[/cyan]",
            title="Connection Error",
            border_style="red"
        ))
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    queue = health.get("queue") or {}
    console.print(Panel(
        f"🚀 [green]Connected Successfully![/green]\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Database: {'[green]up[/green]' if database.get('connected') else '[red]down[/red]'}\n"
        f"• Queue backend: [magenta]{queue.get('backend', 'unknown')}[/magenta] "
        f"(depth [yellow]{queue.get('queue_depth', 0)}[/yellow], "
        f"active [blue]{queue.get('active', 0)}[/blue])\n"
        f"• API URL: [blue]{base_url}[/blue]",
        title="System Status",
        border_style="green" if health.get("ok") else "yellow"
    ))


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(Panel(
        f"🛰️ [bold cyan]JobRelay CLI[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]\n"
        f"• Type: [yellow]Command Line Interface[/yellow]",
        title="Version Info",
        border_style="cyan"
    ))


@app.command()
def worker():
    """⚙️ Run the worker pool for every job type (Ctrl+C to stop)"""
    from jobrelay.worker import main as run_worker_main

    print_info("Starting worker pool, press Ctrl+C to stop")
    run_worker_main()


@app.command()
def quickstart():
    """🚀 Quick start guide"""
    console.print(Panel(
        "🛰️ [bold cyan]JobRelay Quick Start[/bold cyan]\n\n"
        "[bold]1. Check Status[/bold]\n"
        "   [dim]jobrelay status[/dim]\n\n"
        "[bold]2. Start a Worker[/bold]\n"
        "   [dim]jobrelay worker[/dim]\n\n"
        "[bold]3. Create a Job[/bold]\n"
        "   [dim]jobrelay jobs create email:send --payload '{\"to\": \"a@example.com\"}'[/dim]\n\n"
        "[bold]4. Follow It[/bold]\n"
        "   [dim]jobrelay jobs get <job-id> --watch[/dim]\n\n"
        "[bold]5. Check the Queues[/bold]\n"
        "   [dim]jobrelay jobs stats[/dim]\n\n"
        "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
        title="Quick Start Guide",
        border_style="green"
    ))


@app.callback()
def main():
    """
    🛰️ JobRelay CLI

    Submit background jobs, follow them through retries and failures, and
    cancel work that is no longer needed.
    """


if __name__ == "__main__":
    app()
