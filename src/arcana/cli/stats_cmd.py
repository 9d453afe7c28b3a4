"""CLI command for showing queue statistics.

Usage:
    arcana stats background-high
    arcana stats scheduled-tasks --schedules
"""

from __future__ import annotations

import asyncio

import typer

app = typer.Typer(help="Show job counts for a queue")


@app.callback(invoke_without_command=True)
def stats(
    queue: str = typer.Argument(..., help="Queue name"),
    show_schedules: bool = typer.Option(
        False,
        "--schedules",
        "-s",
        help="Also list recurring schedules stored for the queue",
    ),
) -> None:
    """Print pending/active/completed/failed counts for a queue."""
    asyncio.run(_stats(queue, show_schedules))


async def _stats(queue: str, show_schedules: bool) -> None:
    """Async implementation of stats command."""
    from rich.console import Console
    from rich.table import Table

    from arcana.errors import ArcanaError
    from arcana.jobs.broker import create_broker
    from arcana.store.redis import close_redis

    console = Console()
    broker = create_broker()

    try:
        counts = await broker.stats(queue)
        schedules = await broker.list_schedules(queue) if show_schedules else []
    except ArcanaError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e
    finally:
        await broker.close()
        await close_redis()

    table = Table(title=f"Queue: {queue}")
    table.add_column("Status", style="cyan")
    table.add_column("Jobs", style="green", justify="right")
    for status, count in counts.items():
        table.add_row(status, str(count))
    console.print(table)

    if schedules:
        table = Table(title="Recurring Schedules")
        table.add_column("Fixed ID", style="cyan")
        table.add_column("Job Type", style="green")
        table.add_column("Cron", style="yellow")
        table.add_column("Next Run (UTC)", style="magenta")
        for schedule in schedules:
            next_run = schedule.next_run.isoformat() if schedule.next_run else "-"
            table.add_row(schedule.fixed_id, schedule.job_type, schedule.cron, next_run)
        console.print(table)
