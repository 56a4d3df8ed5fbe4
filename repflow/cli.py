"""Command line interface for running repflow workers and inspecting runs."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from repflow import get_repository
from repflow.config import configure_logging, load_config
from repflow.errors import RepflowError
from repflow.runtime import build_orchestrator, build_services

app = typer.Typer(help="CLI for repflow workflows")

# Command groups
run_app = typer.Typer(help="Commands for inspecting runs")
event_app = typer.Typer(help="Commands for sending events")
workflow_app = typer.Typer(help="Commands for registered workflows")
schedule_app = typer.Typer(help="Commands for cron schedules")
cache_app = typer.Typer(help="Commands for the response cache")

app.add_typer(run_app, name="run")
app.add_typer(event_app, name="event")
app.add_typer(workflow_app, name="workflow")
app.add_typer(schedule_app, name="schedule")
app.add_typer(cache_app, name="cache")


@app.callback()
def main() -> None:
    """repflow CLI entry point."""
    pass


@app.command("worker")
def worker(
    lifespan: Optional[float] = None,
    schedule: bool = typer.Option(True, help="Also run the cron scheduler loop"),
) -> None:
    """
    Run a worker process for every registered workflow.

    The worker consumes run wake-ups from the configured transport and
    executes runs against the configured ledger. Unless ``--no-schedule``
    is given it also fires cron workflows and wakes sleeping runs.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)
        schedule: Run the scheduler loop in the same process

    Example:
        repflow worker
        repflow worker --lifespan 300 --no-schedule
    """
    config = load_config()
    configure_logging(config.log_level)
    orchestrator = build_orchestrator(config)
    typer.echo(f"Starting worker for {len(orchestrator.workflows)} workflows")
    asyncio.run(orchestrator.start(lifespan=lifespan, schedule=schedule))


@run_app.command("list")
def run_list(
    workflow: Optional[str] = typer.Option(None, help="Only runs of this workflow"),
    status: Optional[str] = typer.Option(None, help="Only runs in this status"),
    limit: int = typer.Option(50, help="Maximum number of runs to show"),
) -> None:
    """
    List runs with their current status, newest first.

    Example:
        repflow run list
        repflow run list --workflow cron-data-retention --status failed
        # Output: 3f1c...    cron-data-retention    failed
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(workflow_id=workflow, status=status, limit=limit))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.workflow_id}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show one run and its memoized steps.

    Example:
        repflow run show 3f1c...
        # Output: Run 3f1c... (db-workout-completed): completed
        #         Event: pg/workout_sessions.updated
        #         - get-member: completed
        #         - check-streak: completed
    """
    repo = get_repository()

    async def load():
        run = await repo.get_run(run_id)
        steps = await repo.get_step_results(run_id) if run is not None else {}
        return run, steps

    run, steps = asyncio.run(load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id} ({run.workflow_id}): {run.status.value}")
    typer.echo(f"Event: {run.event.name} ({run.event.id})")
    typer.echo(f"Attempt: {run.attempt}")
    if run.wake_at:
        typer.echo(f"Wakes at: {run.wake_at.isoformat()}")
    if run.error:
        typer.echo(f"Error: {run.error}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output, default=str)}")
    for step in steps.values():
        line = f"- {step.step_name}: {step.status.value}"
        if step.failures:
            line += f" (failures: {step.failures})"
        if step.wake_at:
            line += f" (until {step.wake_at.isoformat()})"
        typer.echo(line)


@event_app.command("send")
def event_send(
    name: str,
    data: str = typer.Option("{}", help="Event payload as a JSON object"),
    id: Optional[str] = typer.Option(None, help="Event id; re-sending an id starts nothing new"),
) -> None:
    """
    Send an event and print the runs it started.

    Example:
        repflow event send member/snapshot-update --data '{"member_id": "m1"}'
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(payload, dict):
        typer.secho("Event payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    orchestrator = build_orchestrator(load_config())

    async def send():
        await orchestrator.transport.connect()
        try:
            return await orchestrator.send(name, payload, id=id)
        finally:
            await orchestrator.close()

    try:
        runs = asyncio.run(send())
    except RepflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not runs:
        typer.echo("No workflows started")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.workflow_id}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List registered workflows with their triggers."""
    from repflow.workflows import default_workflows

    for defn in default_workflows():
        trigger = f"cron {defn.cron}" if defn.cron else f"event {defn.event_name}"
        typer.echo(f"{defn.id}\t{trigger}")


@schedule_app.command("list")
def schedule_list(count: int = typer.Option(1, help="Upcoming fire times per workflow")) -> None:
    """Show the next fire times of every cron workflow."""
    orchestrator = build_orchestrator(load_config())
    for workflow_id, times in orchestrator.scheduler.next_fire_times(count=count).items():
        typer.echo(f"{workflow_id}\t" + ", ".join(t.isoformat() for t in times))


def _cache():
    config = load_config()
    if not config.store_url:
        typer.secho("No store configured (set store_url or REPFLOW_STORE_URL)", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return build_services(config)


async def _using_store(services, action):
    await services.db.init_db()
    try:
        return await action()
    finally:
        await services.db.close()


@cache_app.command("stats")
def cache_stats() -> None:
    """Count unexpired durable cache entries per cache type."""
    services = _cache()

    result = asyncio.run(
        _using_store(services, lambda: services.db.cached_counts(services.clock.now()))
    )
    if not result:
        typer.echo("Cache is empty")
        return
    for cache_type, count in sorted(result.items()):
        typer.echo(f"{cache_type}\t{count}")


@cache_app.command("invalidate")
def cache_invalidate(
    prefix: Optional[str] = typer.Option(None, help="Drop entries whose key starts with this"),
    entity: Optional[str] = typer.Option(None, help="Drop entries for this entity id"),
) -> None:
    """Drop cache entries by key prefix or entity id."""
    if (prefix is None) == (entity is None):
        typer.secho("Give exactly one of --prefix or --entity", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    services = _cache()

    if prefix is not None:
        action = lambda: services.cache.invalidate_prefix(prefix)
    else:
        action = lambda: services.cache.invalidate_entity(entity)
    typer.echo(f"Removed {asyncio.run(_using_store(services, action))} entries")


@cache_app.command("cleanup")
def cache_cleanup() -> None:
    """Delete expired cache entries."""
    services = _cache()

    removed = asyncio.run(_using_store(services, services.cache.cleanup_expired))
    typer.echo(f"Removed {removed} expired entries")


if __name__ == "__main__":
    app()
