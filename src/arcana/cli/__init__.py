"""CLI commands for Arcana tasks.

Provides command-line interface using Typer:
- arcana worker: Run the task system until SIGINT/SIGTERM
- arcana trigger: Manually trigger a scheduled job
- arcana schedules: Show the recurring job table
- arcana stats: Show job counts for a queue

Usage:
    arcana --help
    arcana worker --log-level debug
    arcana trigger cleanup-expired-tokens --payload '{"dry_run": true}'
    arcana schedules
    arcana stats background-high
"""

import typer

from arcana.cli.schedules_cmd import app as schedules_app
from arcana.cli.stats_cmd import app as stats_app
from arcana.cli.trigger_cmd import app as trigger_app
from arcana.cli.worker_cmd import app as worker_app

# Main CLI application
app = typer.Typer(
    name="arcana",
    help="Arcana: distributed locks, leader election and background jobs",
    no_args_is_help=True,
)

# Add subcommands
app.add_typer(worker_app, name="worker")
app.add_typer(trigger_app, name="trigger")
app.add_typer(schedules_app, name="schedules")
app.add_typer(stats_app, name="stats")


@app.callback()
def callback() -> None:
    """Arcana: distributed locks, leader election and background jobs."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
