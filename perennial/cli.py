"""Command line interface for perennial instances and workers."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from perennial.config import load_config
from perennial.contracts import InstanceStatus, TaskMessage
from perennial.persistence import get_store
from perennial.registry import InstanceRegistry
from perennial.transports import get_transport
from perennial.worker import Worker

app = typer.Typer(help="CLI for perennial task loops")

# Command groups
instance_app = typer.Typer(help="Commands for managing instances")
worker_app = typer.Typer(help="Commands for running workers")

app.add_typer(instance_app, name="instance")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level for the process"),
) -> None:
    """Perennial CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_status(status: InstanceStatus) -> None:
    typer.echo(f"Instance {status.instance_id}: {status.status.value}")
    if status.orchestration:
        typer.echo(f"Orchestration: {status.orchestration}")
    if status.generation is not None:
        typer.echo(f"Generation: {status.generation}")
    if status.last_event is not None:
        typer.echo(
            f"Last event: #{status.last_event.sequence_number} "
            f"{status.last_event.describe()} at {status.last_event.timestamp.isoformat()}"
        )
    if status.error:
        typer.echo(f"Error: {status.error}")


@instance_app.command("start")
def instance_start(instance_id: Optional[str] = typer.Argument(None)) -> None:
    """
    Start the perpetual loop for an instance id.

    Only one run per instance id can be active. Starting an instance that is
    already running reports a conflict together with its current status.

    Example:
        perennial instance start
        perennial instance start nightly-sync
    """
    config = load_config()
    instance_id = instance_id or config.instance_id
    registry = InstanceRegistry(get_store(), config.retry)

    async def _start():
        result = await registry.try_start(
            instance_id, orchestration=config.orchestration
        )
        if result.started:
            async with get_transport(config=config) as transport:
                await transport.notify_orchestrator(
                    TaskMessage(
                        kind="started",
                        instance_id=instance_id,
                        generation=result.status.generation or 0,
                    )
                )
        return result

    result = asyncio.run(_start())
    if not result.started:
        typer.secho(
            f"An instance with ID '{instance_id}' already exists.", fg=typer.colors.RED
        )
        _echo_status(result.status)
        raise typer.Exit(code=1)
    typer.echo(f"Started orchestration with ID = '{instance_id}'.")
    typer.echo(f"Check status with: perennial instance status {instance_id}")


@instance_app.command("status")
def instance_status(instance_id: str) -> None:
    """Show the run status and last recorded event of an instance."""
    registry = InstanceRegistry(get_store())
    status = asyncio.run(registry.describe(instance_id))
    _echo_status(status)


@instance_app.command("terminate")
def instance_terminate(
    instance_id: str,
    reason: str = typer.Option("terminated by operator", help="Reason recorded with the status"),
) -> None:
    """Force a running instance to Terminated."""
    registry = InstanceRegistry(get_store())
    if not asyncio.run(registry.terminate(instance_id, reason)):
        typer.secho(f"Instance '{instance_id}' is not running", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Instance '{instance_id}' terminated")


@instance_app.command("list")
def instance_list() -> None:
    """List all instances with their current status."""
    registry = InstanceRegistry(get_store())
    instances = asyncio.run(registry.list_instances())
    if not instances:
        typer.echo("No instances found")
        return
    for status in instances:
        typer.echo(f"{status.instance_id}\t{status.status.value}\t{status.generation}")


@instance_app.command("history")
def instance_history(
    instance_id: str,
    archived: bool = typer.Option(
        False, help="Show the previous run's history instead of the current one"
    ),
) -> None:
    """
    Show the recorded history of an instance's current run.

    Example:
        perennial instance history funcid
        # Output: #0 OrchestrationStarted 2026-01-01T10:00:00+00:00
        #         #1 ActivityScheduled(funcid_executor) 2026-01-01T10:00:00+00:00
    """
    store = get_store()
    loader = store.load_archive if archived else store.load_history
    events = asyncio.run(loader(instance_id))
    if not events:
        typer.echo("No history found")
        return
    for event in events:
        typer.echo(
            f"#{event.sequence_number} {event.describe()} {event.timestamp.isoformat()}"
        )


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run the engine, timer sweeper and activity executors in this process.

    Running instances are recovered on startup: overdue timers fire at once
    and activities that were scheduled but never completed are re-dispatched.

    Example:
        perennial worker run
        perennial worker run --lifespan 300
    """
    worker = Worker(load_config(), store=get_store())
    typer.echo("Starting worker")
    asyncio.run(worker.run(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
