"""CLI command for showing recurring jobs.

Usage:
    arcana schedules
"""

from __future__ import annotations

from datetime import UTC, datetime

import typer

app = typer.Typer(help="Show the recurring job table")


@app.callback(invoke_without_command=True)
def schedules() -> None:
    """Print every recurring job with its next run time."""
    from rich.console import Console
    from rich.table import Table

    from arcana.jobs.cron import CronExpression
    from arcana.jobs.scheduler import SCHEDULED_JOBS

    console = Console()
    now = datetime.now(UTC)

    table = Table(title="Recurring Jobs")
    table.add_column("Fixed ID", style="cyan")
    table.add_column("Job Type", style="green")
    table.add_column("Cron", style="yellow")
    table.add_column("Next Run (UTC)", style="magenta")

    for job in SCHEDULED_JOBS:
        next_run = CronExpression(job.cron).next_run(now)
        table.add_row(job.fixed_id, job.job_type.value, job.cron, next_run.isoformat())

    console.print(table)
