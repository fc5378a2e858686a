"""routinebot CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from routinebot import __version__

app = typer.Typer(
    name="routinebot",
    help="routinebot - scheduled agent routines and reminders",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"routinebot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """routinebot - scheduled agent routines and reminders."""


def _open_store():
    from routinebot.core.config.loader import load_config
    from routinebot.memory.store import MemoryStore

    config = load_config()
    return config, MemoryStore(str(config.db_path))


# ════════════════════════════════════════════════════════════
# start — run the scheduler in the foreground
# ════════════════════════════════════════════════════════════


@app.command()
def start() -> None:
    """Run the scheduler until interrupted."""
    from routinebot.agent.executor import LiteLLMAgent
    from routinebot.agent.tools import make_tools
    from routinebot.core.channels import register_channels
    from routinebot.core.cron.scheduler import CronScheduler
    from routinebot.core.session import set_current_session_id

    config, db = _open_store()
    if not config.scheduler.enabled:
        console.print("[yellow]Scheduler disabled in config (scheduler.enabled).[/yellow]")
        raise typer.Exit(code=1)

    set_current_session_id(config.scheduler.default_session)
    agent = LiteLLMAgent(config)
    scheduler = CronScheduler(db, agent, config.scheduler)
    agent.bind_tools(make_tools(scheduler, db))
    channels = register_channels(scheduler, config, db)

    async def _serve() -> None:
        await scheduler.initialize()
        console.print(
            f"[green]routinebot running[/green] "
            f"({len(scheduler.get_jobs())} jobs, channels: {', '.join(channels)})"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("\nBye!")


# ════════════════════════════════════════════════════════════
# status — config + DB info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and database status."""
    config, db = _open_store()
    summary = db.get_cron_summary()
    stats = db.get_execution_stats()

    table = Table(title="routinebot status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Model", config.assistant.model)
    table.add_row("DB Path", config.database.path)
    table.add_row("Jobs", f"{summary['active']}/{summary['total']} enabled")
    table.add_row("Executions", str(stats["total"]))
    table.add_row("Telegram", "enabled" if config.channels.telegram.enabled else "disabled")

    console.print(table)


# ════════════════════════════════════════════════════════════
# cron — job management (sub-command group)
# ════════════════════════════════════════════════════════════

cron_app = typer.Typer(help="Manage scheduled jobs")
app.add_typer(cron_app, name="cron")


@cron_app.command("add")
def cron_add(
    name: str = typer.Argument(help="Unique job name (re-using a name replaces the job)"),
    schedule: str = typer.Argument(help="'0 9 * * *', 'tomorrow 3pm', 'in 2 hours' or '30m'"),
    prompt: str = typer.Argument(help="Prompt run by the agent; '@<chat_id>: ...' sets a recipient"),
    delete_after: bool = typer.Option(False, "--delete-after", help="Delete after the first run"),
    context: int = typer.Option(0, "--context", "-c", help="Recent messages to include (0-10)"),
    channel: str | None = typer.Option(None, "--channel", help="Delivery channel"),
    session: str | None = typer.Option(None, "--session", "-s", help="Session ID"),
) -> None:
    """Add or replace a scheduled job."""
    from routinebot.core.cron.schedule import classify, describe_schedule, format_datetime
    from routinebot.core.cron.scheduler import CronScheduler
    from routinebot.core.cron.types import ClassificationError

    config, db = _open_store()
    try:
        descriptor = classify(schedule)
    except ClassificationError as e:
        console.print(f"[red]Invalid schedule:[/red] {e.reason}")
        console.print(
            "[dim]cron: \"0 9 * * *\"  at: \"tomorrow 3pm\", \"in 2 hours\"  every: \"30m\", \"2h\"[/dim]"
        )
        raise typer.Exit(code=1)

    scheduler = CronScheduler(db, config=config.scheduler)
    created = scheduler.create_job(
        name, schedule, prompt,
        channel=channel,
        session_id=session or config.scheduler.default_session,
        delete_after_run=delete_after,
        context_messages=context,
    )
    if not created:
        console.print(f"[red]Could not create job:[/red] {name}")
        raise typer.Exit(code=1)

    job = db.get_cron_job(name)
    console.print(
        f"[green]Job saved:[/green] {name} "
        f"({descriptor.kind}: {describe_schedule(descriptor)}) "
        f"next: {format_datetime(job.next_run_at) if job else '-'}"
    )


@cron_app.command("list")
def cron_list() -> None:
    """List all scheduled jobs."""
    from routinebot.core.cron.schedule import describe_schedule, format_datetime

    _, db = _open_store()
    jobs = db.list_all()

    if not jobs:
        console.print("[dim]No scheduled jobs.[/dim]")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="blue")
    table.add_column("Schedule", style="yellow")
    table.add_column("Prompt", style="white")
    table.add_column("Channel", style="magenta")
    table.add_column("Session", style="blue")
    table.add_column("Next Run", style="green")
    table.add_column("Last", style="dim")
    table.add_column("Enabled", style="green")

    for job in jobs:
        prompt = job.prompt if len(job.prompt) <= 50 else job.prompt[:50] + "..."
        table.add_row(
            job.name,
            job.schedule_type,
            describe_schedule(job.descriptor),
            prompt,
            job.channel,
            job.session_id,
            format_datetime(job.next_run_at) or "-",
            job.last_status or "-",
            str(job.enabled),
        )

    console.print(table)


@cron_app.command("delete")
def cron_delete(
    name: str = typer.Argument(help="Job name to delete"),
) -> None:
    """Delete a scheduled job by name."""
    _, db = _open_store()
    if db.delete_cron_job(name):
        console.print(f"[green]Deleted job:[/green] {name}")
    else:
        console.print(f"[red]Job not found:[/red] {name}")
        raise typer.Exit(code=1)


@cron_app.command("enable")
def cron_enable(name: str = typer.Argument(help="Job name")) -> None:
    """Enable a job and recompute its next run."""
    _set_enabled(name, True)


@cron_app.command("disable")
def cron_disable(name: str = typer.Argument(help="Job name")) -> None:
    """Disable a job without deleting it."""
    _set_enabled(name, False)


def _set_enabled(name: str, enabled: bool) -> None:
    from routinebot.core.cron.scheduler import CronScheduler

    config, db = _open_store()
    scheduler = CronScheduler(db, config=config.scheduler)
    if not scheduler.set_job_enabled(name, enabled):
        console.print(f"[red]Job not found:[/red] {name}")
        raise typer.Exit(code=1)
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]Job {state}:[/green] {name}")


@cron_app.command("run")
def cron_run(
    name: str = typer.Argument(help="Job name to run"),
) -> None:
    """Queue a job for immediate execution by the running scheduler."""
    _, db = _open_store()
    if db.get_cron_job(name) is None:
        console.print(f"[red]Job not found:[/red] {name}")
        raise typer.Exit(code=1)
    db.set_next_run(name, datetime.now())
    console.print(f"[green]Job queued for immediate execution:[/green] {name}")


@cron_app.command("status")
def cron_status() -> None:
    """Show job counts and the next job due."""
    from routinebot.core.cron.schedule import format_datetime

    _, db = _open_store()
    summary = db.get_cron_summary()
    stats = db.get_execution_stats()

    table = Table(title="Scheduler status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Total", str(summary["total"]))
    table.add_row("Active", str(summary["active"]))
    table.add_row("Succeeded", str(summary["succeeded"]))
    table.add_row("Failed", str(summary["failed"]))
    table.add_row("Executions", str(stats["total"]))
    table.add_row("Last execution", format_datetime(stats["last"]) or "-")
    nxt = summary["next"]
    table.add_row("Next", f"{nxt['name']} at {format_datetime(nxt['at'])}" if nxt else "-")

    console.print(table)


@cron_app.command("history")
def cron_history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of executions"),
) -> None:
    """Show the most recent executions, newest first."""
    from routinebot.core.cron.schedule import format_datetime, format_duration

    _, db = _open_store()
    records = db.get_execution_history(limit)
    if not records:
        console.print("[dim]No executions yet.[/dim]")
        return

    table = Table(title="Execution History")
    table.add_column("When", style="dim")
    table.add_column("Job", style="cyan")
    table.add_column("Session", style="blue")
    table.add_column("Status", style="green")
    table.add_column("Duration", style="yellow")
    table.add_column("Error", style="red")
    for r in records:
        table.add_row(
            format_datetime(r.executed_at) or "-",
            r.job_name,
            r.session_id,
            r.status,
            format_duration(r.duration_ms),
            r.error or "",
        )
    console.print(table)
