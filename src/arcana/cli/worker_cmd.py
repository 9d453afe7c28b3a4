"""CLI command for running the task system.

Usage:
    arcana worker
    arcana worker --log-level debug --no-json
    arcana worker --shutdown-timeout 60
"""

from __future__ import annotations

import asyncio
import logging
import signal

import typer

from arcana.config import settings

app = typer.Typer(help="Run background workers and the scheduler")

logger = logging.getLogger(__name__)


@app.callback(invoke_without_command=True)
def worker(
    log_level: str = typer.Option(
        settings.log_level,
        "--log-level",
        "-l",
        help="Log level: debug, info, warning, error",
    ),
    json_logs: bool = typer.Option(
        settings.log_json,
        "--json/--no-json",
        help="Emit JSON logs",
    ),
    shutdown_timeout: float = typer.Option(
        settings.shutdown_timeout,
        "--shutdown-timeout",
        "-t",
        help="Seconds to wait for in-flight jobs on shutdown",
    ),
) -> None:
    """Run the task system until SIGINT or SIGTERM.

    Every instance processes jobs; one elected instance registers the
    recurring schedules.
    """
    from arcana.observability.logging import configure_logging, instance_id_var

    configure_logging(json_format=json_logs, level=log_level.upper())
    instance_id_var.set(settings.instance_id)

    started = asyncio.run(_run_worker(shutdown_timeout))
    if not started:
        raise typer.Exit(code=1)


async def _run_worker(shutdown_timeout: float) -> bool:
    """Async implementation of worker command."""
    from arcana.jobs.lifecycle import initialize_tasks, shutdown_tasks

    if not await initialize_tasks():
        return False

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Worker running, waiting for shutdown signal")
    try:
        await stop.wait()
        logger.info("Received shutdown signal")
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await shutdown_tasks(timeout=shutdown_timeout)

    return True
