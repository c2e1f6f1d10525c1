"""Command line interface for operating sagaflow executions."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional

import typer

from sagaflow.approval import ApprovalGate, SignalResult
from sagaflow.cli_utils.definitions import load_definitions
from sagaflow.config import load_config
from sagaflow.constants import LIFECYCLE_TOPIC
from sagaflow.contracts import ApprovalDecision, ExecutionStatus, WorkflowDefinition
from sagaflow.engine import WorkflowEngine
from sagaflow.errors import ExecutionNotFound, InvalidTransition, SagaflowError
from sagaflow.persistence import get_repository
from sagaflow.transports import get_transport, lifecycle_transport

app = typer.Typer(help="CLI for sagaflow workflows")

# Command groups
execution_app = typer.Typer(help="Inspect and control executions")
definition_app = typer.Typer(help="Inspect workflow definitions")
scheduler_app = typer.Typer(help="Run the trigger scheduler")
events_app = typer.Typer(help="Observe lifecycle events")

app.add_typer(execution_app, name="execution")
app.add_typer(definition_app, name="definition")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(events_app, name="events")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for sagaflow output"),
) -> None:
    """sagaflow CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(module: str) -> List[WorkflowDefinition]:
    try:
        return load_definitions(module)
    except (ImportError, FileNotFoundError) as exc:
        typer.secho(f"Cannot load definitions from {module}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _engine(module: Optional[str]) -> WorkflowEngine:
    config = load_config()
    engine = WorkflowEngine(
        store=get_repository(), config=config, transport=lifecycle_transport(config)
    )
    if module:
        for definition in _load(module):
            engine.register(definition)
    return engine


# ----------------------------------------------------------------------
# execution


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    definition: Optional[str] = typer.Option(None, help="Filter by name@version"),
) -> None:
    """
    List executions with their current status.

    Example:
        sagaflow execution list --status awaiting_approval
        # Output: 7f1c...    order@1    awaiting_approval
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(status=status, definition_id=definition))
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.definition_id}\t{execution.status.value}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show status, context and step history for one execution."""
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Execution {execution.id}: {execution.status.value} ({execution.definition_id})"
    )
    typer.echo(f"Trigger: {execution.trigger.kind.value}")
    if execution.pause_requested and execution.status != ExecutionStatus.PAUSED:
        typer.echo("Pause requested")
    if execution.context:
        typer.echo(f"Context: {json.dumps(execution.context, default=str)}")
    if execution.error:
        typer.echo(f"Error: {execution.error.error_type}: {execution.error.message}")
    for run in execution.steps:
        line = f"- {run.step_name}: {run.status.value} (attempts {run.attempt_count})"
        if run.approval:
            line += f" approval={run.approval.value}"
        if run.skip_reason:
            line += f" skipped={run.skip_reason}"
        if run.tolerated:
            line += " tolerated"
        if run.last_error:
            line += f" last_error={run.last_error.error_type}"
        if run.rollback_error:
            line += f" rollback_error={run.rollback_error.error_type}"
        typer.echo(line)
    for error in execution.compensation_errors:
        typer.echo(f"Compensation error: {error.error_type}: {error.message}")


def _signal(
    execution_id: str,
    step_name: str,
    decision: ApprovalDecision,
    reason: Optional[str],
    module: Optional[str],
) -> None:
    async def _run() -> SignalResult:
        if module is None:
            return await ApprovalGate(get_repository()).signal(
                execution_id, step_name, decision, reason
            )
        engine = _engine(module)
        result = await engine.signal_approval(execution_id, step_name, decision, reason)
        if result == SignalResult.ACCEPTED:
            await engine.wait_for(execution_id)
        return result

    result = asyncio.run(_run())
    if result == SignalResult.NOT_FOUND:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    if result == SignalResult.NOT_AWAITING_APPROVAL:
        typer.echo(f"Step {step_name} is not awaiting approval")
        raise typer.Exit(code=1)
    typer.echo(f"Step {step_name} {decision.value}")


@execution_app.command("approve")
def execution_approve(
    execution_id: str,
    step_name: str,
    module: Optional[str] = typer.Option(
        None, help="Module or file with definitions; resumes the execution in-process"
    ),
) -> None:
    """
    Approve a step that is awaiting approval.

    Without --module the decision is recorded and the execution continues
    the next time an engine recovers it.

    Example:
        sagaflow execution approve 7f1c... ship --module shop.workflows
    """
    _signal(execution_id, step_name, ApprovalDecision.APPROVED, None, module)


@execution_app.command("reject")
def execution_reject(
    execution_id: str,
    step_name: str,
    reason: Optional[str] = typer.Option(None, help="Reason recorded with the rejection"),
    module: Optional[str] = typer.Option(
        None, help="Module or file with definitions; compensates in-process"
    ),
) -> None:
    """Reject a step that is awaiting approval."""
    _signal(execution_id, step_name, ApprovalDecision.REJECTED, reason, module)


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str,
    module: Optional[str] = typer.Option(
        None, help="Module or file with definitions; compensates in-process"
    ),
) -> None:
    """Request cancellation of an execution."""

    async def _run() -> bool:
        if module is None:
            execution = await get_repository().request_cancellation(execution_id)
            return not execution.status.terminal
        engine = _engine(module)
        accepted = await engine.cancel(execution_id)
        if accepted:
            await engine.wait_for(execution_id)
        return accepted

    try:
        accepted = asyncio.run(_run())
    except ExecutionNotFound:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    if not accepted:
        typer.echo("Execution already finished")
        raise typer.Exit(code=1)
    typer.echo(f"Cancellation requested for {execution_id}")


@execution_app.command("pause")
def execution_pause(
    execution_id: str,
    module: Optional[str] = typer.Option(
        None, help="Module or file with definitions; settles the pause in-process"
    ),
) -> None:
    """
    Pause an execution once its running steps finish.

    Example:
        sagaflow execution pause 7f1c... --module shop.workflows
    """

    async def _run() -> bool:
        if module is None:
            execution = await get_repository().request_pause(execution_id)
            return execution.pause_requested
        engine = _engine(module)
        accepted = await engine.pause(execution_id)
        if accepted:
            await engine.wait_for(execution_id)
        return accepted

    try:
        accepted = asyncio.run(_run())
    except ExecutionNotFound:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    if not accepted:
        typer.echo("Execution can no longer be paused")
        raise typer.Exit(code=1)
    typer.echo(f"Pause requested for {execution_id}")


@execution_app.command("resume")
def execution_resume(
    execution_id: str,
    context: Optional[str] = typer.Option(None, help="Context to merge, as JSON"),
    module: Optional[str] = typer.Option(
        None, help="Module or file with definitions; continues the execution in-process"
    ),
) -> None:
    """Resume a paused execution, optionally merging extra context first."""
    try:
        extra = json.loads(context) if context else None
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid context JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run() -> bool:
        if module is None:
            try:
                await get_repository().resume_execution(execution_id, extra)
            except InvalidTransition:
                return False
            return True
        engine = _engine(module)
        resumed = await engine.resume(execution_id, extra)
        if resumed:
            await engine.wait_for(execution_id)
        return resumed

    try:
        resumed = asyncio.run(_run())
    except ExecutionNotFound:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    if not resumed:
        typer.echo("Execution is not paused")
        raise typer.Exit(code=1)
    typer.echo(f"Resumed {execution_id}")


# ----------------------------------------------------------------------
# definitions and runs


@definition_app.command("list")
def definition_list(
    module: str = typer.Option(..., help="Module or file with definitions"),
) -> None:
    """List the workflow definitions found in a module."""
    definitions = _load(module)
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        line = f"{definition.definition_id}\t{len(definition.steps)} steps"
        if definition.schedule:
            line += f"\tschedule={definition.schedule}"
        typer.echo(line)
        if definition.description:
            typer.echo(f"  {definition.description}")


@app.command("run")
def run(
    definition: str,
    module: str = typer.Option(..., help="Module or file with definitions"),
    context: Optional[str] = typer.Option(None, help="Initial context as JSON"),
) -> None:
    """
    Start an execution and wait until it completes, fails or suspends.

    Example:
        sagaflow run order@1 --module shop.workflows --context '{"order_id": 42}'
    """
    try:
        initial = json.loads(context) if context else {}
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid context JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _run():
        engine = _engine(module)
        execution_id = await engine.start_execution(definition, initial, wait=True)
        return await engine.get_execution(execution_id)

    try:
        execution = asyncio.run(_run())
    except SagaflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution ID: {execution.id}")
    typer.echo(f"Status: {execution.status.value}")
    if execution.status not in (ExecutionStatus.COMPLETED, ExecutionStatus.AWAITING_APPROVAL):
        raise typer.Exit(code=1)


@scheduler_app.command("start")
def scheduler_start(
    module: str = typer.Option(..., help="Module or file with definitions"),
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to run before stopping (default: run indefinitely)"
    ),
) -> None:
    """Recover executions and fire scheduled definitions until stopped."""

    async def _run() -> None:
        engine = _engine(module)
        schedules = engine.dispatcher.schedules
        typer.echo(f"Starting scheduler with {len(schedules)} schedule(s)")
        await engine.start(lifespan)
        try:
            await engine.dispatcher.join()
        finally:
            await engine.stop()

    asyncio.run(_run())


@events_app.command("tail")
def events_tail(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to listen before stopping (default: until interrupted)"
    ),
    event_type: Optional[List[str]] = typer.Option(
        None, "--type", help="Only show this event type; repeatable"
    ),
    execution_id: Optional[str] = typer.Option(None, help="Only show one execution"),
    backend: Optional[str] = typer.Option(None, help="Transport backend override"),
) -> None:
    """
    Print lifecycle events published by running engines.

    Events are consumed: each one is shown to a single tailing process.

    Example:
        sagaflow events tail --type execution.failed --lifespan 60
        # Output: 2024-05-01T12:00:03+00:00 execution.failed 7f1c... error_type=declined
    """

    async def _run() -> None:
        async with get_transport(backend) as transport:
            async for event in transport.tail(
                LIFECYCLE_TOPIC, lifespan, event_type, execution_id
            ):
                line = f"{event.timestamp.isoformat()} {event.type} {event.execution_id}"
                if event.step_name:
                    line += f" step={event.step_name}"
                for key, value in event.data.items():
                    line += f" {key}={value}"
                typer.echo(line)

    try:
        asyncio.run(_run())
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
