"""CLI command for manually triggering scheduled jobs.

Usage:
    arcana trigger cleanup-expired-tokens
    arcana trigger cleanup-inactive-users --payload '{"inactive_days": 30}'
"""

from __future__ import annotations

import asyncio
from typing import Any

import orjson
import typer

app = typer.Typer(help="Manually trigger a scheduled job")


@app.callback(invoke_without_command=True)
def trigger(
    job_type: str = typer.Argument(
        ...,
        help="Scheduled job type (e.g. cleanup-expired-tokens)",
    ),
    payload: str | None = typer.Option(
        None,
        "--payload",
        "-p",
        help="Extra payload as a JSON object",
    ),
) -> None:
    """Enqueue one immediate run of a scheduled job type."""
    extra: dict[str, Any] = {}
    if payload:
        try:
            extra = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            typer.echo(f"Invalid JSON payload: {e}", err=True)
            raise typer.Exit(code=2) from e
        if not isinstance(extra, dict):
            typer.echo("Payload must be a JSON object", err=True)
            raise typer.Exit(code=2)

    asyncio.run(_trigger(job_type, extra))


async def _trigger(job_type: str, extra: dict[str, Any]) -> None:
    """Async implementation of trigger command."""
    from rich.console import Console

    from arcana.errors import ArcanaError
    from arcana.jobs.runtime import TaskRuntime
    from arcana.jobs.scheduler import Scheduler
    from arcana.store.redis import close_redis

    console = Console()
    runtime = TaskRuntime()
    scheduler = Scheduler(runtime)

    try:
        scheduler.prepare()
        job = await scheduler.trigger_scheduled_job(job_type, extra)
    except ArcanaError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        await runtime.close(timeout=0)
        await close_redis()

    if job is None:
        console.print("[yellow]Job not queued (duplicate id)[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[green]Queued[/green] {job.type} as [cyan]{job.id}[/cyan]")
