"""Embedding job queue maintenance commands.

These commands talk to the job database directly through JobStore, so they
work while workers are running and without a graph store or embedding
provider.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Any, Awaitable, Callable, Optional, TypeVar
from uuid import UUID

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from mnemos.jobs.manager import retention_window_ms
from mnemos.jobs.store import JobStore

app = typer.Typer(help="Embedding job queue commands")
console = Console()

T = TypeVar("T")


def _run(operation: Callable[[JobStore], Awaitable[T]]) -> T:
    """Run an async JobStore operation and dispose the engine afterwards."""
    from mnemos.main import get_app_context

    ctx = get_app_context()

    async def _execute() -> T:
        try:
            return await operation(ctx.job_store)
        finally:
            await ctx.engine.dispose()

    return asyncio.run(_execute())


@app.command()
def status(
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (table or json)"),
    ] = "table",
) -> None:
    """Show job counts per status."""
    try:
        queue = _run(lambda store: store.get_queue_status())
    except Exception as e:
        console.print(f"[red]Error reading queue status:[/red] {e}")
        raise typer.Exit(code=1)

    if format == "json":
        console.print(json.dumps(queue.model_dump(), indent=2))
        return

    table = Table(title="Embedding Job Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", justify="right")
    table.add_row("pending", str(queue.pending))
    table.add_row("processing", str(queue.processing))
    table.add_row("completed", str(queue.completed))
    table.add_row("failed", str(queue.failed), style="red" if queue.failed else None)
    table.add_row("total", str(queue.total), style="bold")
    console.print(table)


@app.command()
def show(
    job_id: Annotated[str, typer.Argument(help="Job UUID")],
) -> None:
    """Show a single job."""
    try:
        job_uuid = UUID(job_id)
    except ValueError:
        console.print(f"[red]Invalid job UUID:[/red] {job_id}")
        raise typer.Exit(code=1)

    try:
        job = _run(lambda store: store.get_job(job_uuid))
    except Exception as e:
        console.print(f"[red]Error reading job:[/red] {e}")
        raise typer.Exit(code=1)

    if job is None:
        console.print(f"[red]Job not found:[/red] {job_id}")
        raise typer.Exit(code=1)

    fields: dict[str, Any] = {
        "Entity": job.entity_uid,
        "Model": job.model,
        "Version": job.version,
        "Status": job.status,
        "Priority": job.priority,
        "Attempts": f"{job.attempts}/{job.max_attempts}",
        "Lock owner": job.lock_owner or "-",
        "Error": job.error or "-",
    }
    body = "\n".join(f"[bold]{key}:[/bold] {value}" for key, value in fields.items())
    console.print(Panel(body, title=f"Job {job.id}", border_style="cyan"))


@app.command("retry-failed")
def retry_failed() -> None:
    """Return every failed job to pending with attempts cleared."""
    try:
        count = _run(lambda store: store.retry_failed_jobs())
    except Exception as e:
        console.print(f"[red]Error retrying failed jobs:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Requeued {count} failed job(s)[/green]")


@app.command()
def recover() -> None:
    """Reclaim processing jobs whose lease has expired."""
    try:
        count = _run(lambda store: store.recover_stale_jobs())
    except Exception as e:
        console.print(f"[red]Error recovering stale jobs:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Recovered {count} stale job(s)[/green]")


@app.command()
def cleanup(
    retention_days: Annotated[
        Optional[int],
        typer.Option(
            "--retention-days",
            "-r",
            help="Delete completed/failed jobs older than this many days (7-30)",
        ),
    ] = None,
) -> None:
    """Delete completed and failed jobs older than the retention window."""
    from mnemos.main import get_app_context

    days = retention_days
    if days is None:
        days = get_app_context().config.jobs.retention_days

    try:
        retention_ms = retention_window_ms(days)
    except ValueError as e:
        console.print(f"[red]Invalid retention:[/red] {e}")
        raise typer.Exit(code=1)

    try:
        count = _run(lambda store: store.cleanup_jobs(retention_ms))
    except Exception as e:
        console.print(f"[red]Error cleaning up jobs:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]Deleted {count} job(s) older than {days} days[/green]")
