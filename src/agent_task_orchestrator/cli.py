"""CLI interface for the agent task orchestrator."""

import asyncio
import json
from typing import Any

import typer

from .config import get_settings
from .exceptions import OrchestratorError
from .observability import setup_structured_logging
from .tasks import Orchestrator, TaskStatus, create_task_store, default_catalog, demo_registry

app = typer.Typer(help="Run and inspect multi-step agent tasks")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_params(values: list[str] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got: {item}", param_hint="--param")
        params[key.strip()] = value
    return params


def _parse_status(status: str | None) -> TaskStatus | None:
    if status is None:
        return None
    try:
        return TaskStatus(status.lower())
    except ValueError:
        raise typer.BadParameter(f"Unknown status: {status}", param_hint="--status") from None


def _setup_logging() -> None:
    level = get_settings().server.logging_level
    setup_structured_logging(level)


@app.command()
def run(
    task_type: str = typer.Argument(..., help="Task type, e.g. thesis-validation"),
    workspace: int = typer.Option(1, "--workspace", "-w", help="Workspace id"),
    param: list[str] = typer.Option(None, "--param", "-p", help="Task parameter as key=value (repeatable)"),
    timeout: float = typer.Option(None, "--timeout", "-t", help="Seconds to wait for the task to finish"),
) -> None:
    """Create and run a task with echo executors, then print the final task."""
    settings = get_settings()
    params = _parse_params(param)
    _setup_logging()

    async def _run() -> dict[str, Any]:
        catalog = default_catalog(settings.templates.directory)
        store = create_task_store(settings.store)
        await store.initialize()
        orchestrator = Orchestrator(demo_registry(catalog.actions()), store=store, catalog=catalog, settings=settings.orchestrator)
        try:
            task = await orchestrator.create_task(workspace, task_type, params)
            await orchestrator.start(task.id)
            finished = await orchestrator.wait(task.id, timeout=timeout)
        finally:
            await orchestrator.shutdown()
        return finished.model_dump(mode="json", by_alias=True)

    try:
        result = asyncio.run(_run())
    except (OrchestratorError, TimeoutError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    _print_json(result)


@app.command()
def types() -> None:
    """List available task types and their steps."""
    catalog = default_catalog(get_settings().templates.directory)
    for task_type in catalog.types():
        template = catalog.get(task_type)
        print(f"{task_type}: {template.description}")
        for step in template.steps:
            print(f"  {step.id}  {step.action:<26} {step.name}")


@app.command()
def history(
    workspace: int = typer.Option(1, "--workspace", "-w", help="Workspace id"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum number of tasks"),
    status: str = typer.Option(None, "--status", "-s", help="Only tasks with this status"),
    query: str = typer.Option(None, "--query", "-q", help="Search descriptions, types and errors"),
) -> None:
    """Show stored task results for a workspace."""
    task_status = _parse_status(status)
    store = create_task_store(get_settings().store)

    async def _history():
        if query:
            return await store.search_task_results(query, workspace_id=workspace, status=task_status, limit=limit)
        return await store.list_task_results(workspace, limit=limit, status=task_status)

    try:
        results = asyncio.run(_history())
    except OrchestratorError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    _print_json([r.model_dump(mode="json", by_alias=True) for r in results])


@app.command()
def steps(task_id: str = typer.Argument(..., help="Task id")) -> None:
    """Show stored step results for a task."""
    store = create_task_store(get_settings().store)
    try:
        results = asyncio.run(store.get_step_results(task_id))
    except OrchestratorError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    if not results:
        print(f"No steps found for task: {task_id}")
        raise typer.Exit(code=1)
    _print_json([r.model_dump(mode="json", by_alias=True) for r in results])


@app.command()
def metrics(
    workspace: int = typer.Option(1, "--workspace", "-w", help="Workspace id"),
    period_hours: float = typer.Option(None, "--period-hours", "-H", help="Aggregation window in hours"),
) -> None:
    """Show aggregate performance metrics for a workspace."""
    from .telemetry import get_metrics

    settings = get_settings()
    hours = period_hours if period_hours is not None else settings.telemetry.default_period_hours
    store = create_task_store(settings.store)
    result = asyncio.run(get_metrics(store, workspace, hours, top_n=settings.telemetry.top_n))
    _print_json(result.model_dump(mode="json", by_alias=True))


@app.command()
def cleanup(
    days: int = typer.Option(None, "--days", "-d", help="Delete finished tasks older than this many days"),
) -> None:
    """Delete old finished task results."""
    settings = get_settings()
    retention = days if days is not None else settings.store.retention_days
    store = create_task_store(settings.store)
    try:
        deleted = asyncio.run(store.cleanup_old_results(retention))
    except OrchestratorError as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1) from e
    print(f"Deleted {deleted} task(s) older than {retention} days")


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = get_settings()
    print(f"Store Backend: {settings.store.backend}")
    print(f"Database: {settings.store.get_db_path()}")
    print(f"Retention Days: {settings.store.retention_days}")
    print(f"Retry Delay: {settings.orchestrator.retry_delay_seconds}s")
    print(f"Step Timeout: {settings.orchestrator.step_timeout_seconds or '(none)'}")
    print(f"Default Max Retries: {settings.orchestrator.default_max_retries}")
    print(f"Metrics Period: {settings.telemetry.default_period_hours}h")
    print(f"Template Directory: {settings.templates.directory or '(built-in only)'}")


if __name__ == "__main__":
    app()
