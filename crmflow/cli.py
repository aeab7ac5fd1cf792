"""Command line interface for managing crmflow workflows and workers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from crmflow import (
    ExecutionStatus,
    RetryingDispatcher,
    StoreChannelDispatcher,
    WorkflowCatalog,
    WorkflowExecutionEngine,
    WorkflowScheduler,
    WorkflowTriggerService,
    get_store,
    get_event_queue,
)
from crmflow.config import CrmFlowConfig, load_config
from crmflow.errors import CrmFlowError
from crmflow.events import EventConsumer

app = typer.Typer(help="CLI for crmflow marketing workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting and steering executions")
scheduler_app = typer.Typer(help="Commands for the periodic scheduler")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(scheduler_app, name="scheduler")


@dataclass
class Services:
    config: CrmFlowConfig
    engine: WorkflowExecutionEngine
    triggers: WorkflowTriggerService
    catalog: WorkflowCatalog


def _services() -> Services:
    config = load_config()
    store = get_store()
    dispatcher = StoreChannelDispatcher(store)
    if config.dispatcher.max_attempts > 1:
        dispatcher = RetryingDispatcher(
            dispatcher,
            max_attempts=config.dispatcher.max_attempts,
            backoff_base=config.dispatcher.backoff_base,
        )
    engine = WorkflowExecutionEngine(store, dispatcher)
    return Services(
        config=config,
        engine=engine,
        triggers=WorkflowTriggerService(store, engine),
        catalog=WorkflowCatalog(store, engine),
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Override the configured log level"
    ),
) -> None:
    """crmflow CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


@workflow_app.command("load")
def workflow_load(
    path: Path,
    activate: bool = typer.Option(False, help="Activate the workflow after creating it"),
) -> None:
    """
    Create a workflow from a YAML or JSON definition file.

    Example:
        crmflow workflow load ./welcome.yaml --activate
        # Output: Created workflow 3f2a...    welcome-series    active
    """
    if not path.exists():
        _fail(f"File not found: {path}")
    try:
        definition = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        _fail(f"Could not parse {path}: {exc}")

    services = _services()

    async def _load():
        workflow = await services.catalog.create(definition)
        if activate:
            workflow = await services.catalog.activate(workflow.id)
        return workflow

    try:
        workflow = asyncio.run(_load())
    except (ValidationError, CrmFlowError) as exc:
        _fail(f"Invalid workflow definition: {exc}")
    typer.echo(f"Created workflow {workflow.id}\t{workflow.name}\t{workflow.status.value}")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflows with their status and run counters.

    Example:
        crmflow workflow list
        # Output: 3f2a...    welcome-series    active    entered=4 completed=3 active=1 dropped=0
    """
    services = _services()
    workflows = asyncio.run(services.catalog.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        m = wf.metrics
        typer.echo(
            f"{wf.id}\t{wf.name}\t{wf.status.value}\t"
            f"entered={m.total_entered} completed={m.completed} active={m.active} dropped={m.dropped}"
        )


def _transition(action: str, workflow_id: str, **kwargs) -> None:
    services = _services()
    try:
        workflow = asyncio.run(getattr(services.catalog, action)(workflow_id, **kwargs))
    except CrmFlowError as exc:
        _fail(str(exc))
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Make a workflow eligible for triggering."""
    _transition("activate", workflow_id)


@workflow_app.command("pause")
def workflow_pause(
    workflow_id: str,
    cancel_running: bool = typer.Option(
        False, help="Also cancel executions that are already in flight"
    ),
) -> None:
    """Stop a workflow from starting new executions."""
    _transition("pause", workflow_id, cancel_in_flight=cancel_running)


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    """Retire a workflow for good and cancel its in-flight executions."""
    _transition("archive", workflow_id)


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    contact: Optional[str] = typer.Option(None, help="Filter by contact id"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """
    List executions, oldest first.

    Example:
        crmflow execution list --status waiting_delay
        # Output: 9c1e...    3f2a...    contact-1    waiting_delay    step-2
    """
    services = _services()
    executions = asyncio.run(
        services.engine.list_executions(
            workflow_id=workflow, contact_id=contact, status=status
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(
            f"{ex.id}\t{ex.workflow_id}\t{ex.contact_id}\t{ex.status.value}\t{ex.current_step_id or '-'}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show status, context summary and step history of an execution.

    Example:
        crmflow execution show 9c1e...
        # Output: Execution 9c1e...: waiting_delay
        #         Workflow: 3f2a...  Contact: contact-1
        #         Resume at: 2024-01-02T10:00:00+00:00
        #         - step-1 (action): completed
        #         - step-2 (delay): waiting
    """
    services = _services()

    async def _load():
        execution = await services.engine.get_execution(execution_id)
        steps = await services.engine.list_steps(execution_id) if execution else []
        return execution, steps

    execution, steps = asyncio.run(_load())
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id}  Contact: {execution.contact_id}")
    typer.echo(f"Current step: {execution.current_step_id or '-'}")
    if execution.resume_at:
        typer.echo(f"Resume at: {execution.resume_at.isoformat()}")
    if execution.error_message:
        typer.echo(f"Error: {execution.error_message}")
    trigger = execution.context.get("trigger") or {}
    if trigger:
        typer.echo(f"Trigger: {trigger}")
    for step in steps:
        typer.echo(
            f"- {step.step_id} ({step.kind}): {step.status}"
            + (f" [{step.error_message}]" if step.error_message else "")
        )


@execution_app.command("resume")
def execution_resume(execution_id: str) -> None:
    """Resume a waiting execution whose delay has elapsed."""
    services = _services()
    execution = asyncio.run(services.engine.resume(execution_id))
    if execution is None:
        _fail("Execution not found")
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel a running or waiting execution."""
    services = _services()
    execution = asyncio.run(services.engine.cancel(execution_id, "cancelled by operator"))
    if execution is None:
        _fail("Execution not found")
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@scheduler_app.command("run")
def scheduler_run(lifespan: Optional[float] = None) -> None:
    """
    Run the scheduler loop for delayed executions and date-based triggers.

    Example:
        crmflow scheduler run --lifespan 300
    """
    services = _services()
    scheduler = WorkflowScheduler(
        services.engine,
        services.triggers,
        execution_interval=services.config.scheduler.execution_interval,
        date_trigger_interval=services.config.scheduler.date_trigger_interval,
    )
    typer.echo("Starting scheduler")
    asyncio.run(scheduler.run(lifespan=lifespan))


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Run one pass of both scheduler jobs and exit."""
    services = _services()
    scheduler = WorkflowScheduler(services.engine, services.triggers)

    async def _tick():
        started = await scheduler.tick_date_triggers()
        resumed = await scheduler.tick_executions()
        return started, resumed

    started, resumed = asyncio.run(_tick())
    typer.echo(f"Date triggers started {len(started)} executions")
    typer.echo(f"Resumed {resumed} due executions")


@app.command("worker")
def worker(
    lifespan: Optional[float] = None,
    consumer: Optional[str] = typer.Option(
        None, help="In-flight list to own; unique per worker process"
    ),
) -> None:
    """
    Consume CRM domain events from the configured event queue.

    Events left unacknowledged by a previous run of the same consumer are
    redelivered first.

    Example:
        crmflow worker --consumer worker-1 --lifespan 300
    """
    services = _services()
    queue = get_event_queue(config=services.config, consumer=consumer)
    events = EventConsumer(queue, services.triggers)

    async def _consume():
        try:
            await events.start(lifespan=lifespan)
        finally:
            await queue.close()

    typer.echo(f"Listening for events on {queue.name} as {queue.consumer}")
    asyncio.run(_consume())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
