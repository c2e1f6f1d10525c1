"""Drive a single execution through its state machine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from . import events as ev
from .approval import ApprovalGate
from .compensation import CompensationEngine
from .config import EngineSettings
from .constants import ERROR_CANCELLED, ERROR_EXECUTION_TIMEOUT
from .contracts import ExecutionStatus, StepError, StepStatus, utcnow
from .errors import ExecutionNotFound, PersistenceError
from .events import EventEmitter
from .execute import StepRunner
from .graph import Graph
from .persistence import Execution, ExecutionStore
from .registry import DefinitionRegistry
from .utils.calls import call_handler

logger = logging.getLogger(__name__)


class ExecutionCoordinator:
    """Run passes over an execution until it is terminal, suspended or paused.

    A pass claims every runnable step, runs claimed steps concurrently and
    re-evaluates after each result. Passes over the same execution are
    serialized within the process; across processes the step claim in the
    store is the only guard against running a step twice.
    """

    def __init__(
        self,
        store: ExecutionStore,
        registry: DefinitionRegistry,
        runner: StepRunner,
        gate: ApprovalGate,
        compensator: CompensationEngine,
        emitter: Optional[EventEmitter] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._runner = runner
        self._gate = gate
        self._compensator = compensator
        self._emitter = emitter or EventEmitter()
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        # passes holding or waiting on each lock; entries go when it drops to zero
        self._lock_users: Dict[str, int] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}

    def notify(self, execution_id: str) -> None:
        """Wake a pass that is sleeping until a retry is due."""
        event = self._wakeups.get(execution_id)
        if event is not None:
            event.set()

    async def run(self, execution_id: str) -> Execution:
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        self._lock_users[execution_id] = self._lock_users.get(execution_id, 0) + 1
        try:
            async with lock:
                return await self._run_with_retries(execution_id)
        finally:
            self._lock_users[execution_id] -= 1
            if not self._lock_users[execution_id]:
                del self._lock_users[execution_id]
                self._locks.pop(execution_id, None)
                self._wakeups.pop(execution_id, None)

    async def _run_with_retries(self, execution_id: str) -> Execution:
        failures = 0
        while True:
            try:
                return await self._drive(execution_id)
            except PersistenceError as exc:
                failures += 1
                if failures > self._settings.persistence_max_retries:
                    logger.error(
                        f"Giving up on execution_id={execution_id} after "
                        f"{failures} store failures: {exc}"
                    )
                    raise
                logger.warning(
                    f"Store failure while driving execution_id={execution_id}, "
                    f"retrying in {self._settings.persistence_retry_delay}s: {exc}"
                )
                await asyncio.sleep(self._settings.persistence_retry_delay)

    # ------------------------------------------------------------------
    async def _load(self, execution_id: str) -> Execution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    async def _drive(self, execution_id: str) -> Execution:
        execution = await self._load(execution_id)
        if execution.status.terminal:
            return execution
        graph = self._registry.get(execution.definition_id)
        if execution.status == ExecutionStatus.COMPENSATING:
            return await self._compensate(execution, graph)

        in_flight: Dict[asyncio.Task, str] = {}
        failure: Optional[StepError] = None
        try:
            while True:
                execution = await self._load(execution_id)
                failure = failure or self._failure_reason(execution, graph)
                pausing = failure is None and execution.pause_requested
                if failure is None and not pausing:
                    if await self._gate.expire_overdue(execution, graph):
                        continue
                    execution = await self._launch(execution, graph, in_flight)

                if in_flight:
                    settling = failure is not None or pausing
                    wake_at = None if settling else self._busy_wake(execution, graph)
                    done, _ = await asyncio.wait(
                        in_flight,
                        timeout=self._seconds_until(wake_at),
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    for task in done:
                        in_flight.pop(task)
                        task.result()
                    continue

                if failure is not None:
                    return await self._fail(execution, graph, failure)
                if pausing:
                    return await self._pause(execution)
                if execution.all_settled:
                    return await self._complete(execution, graph)

                if await self._recover_interrupted(execution, graph):
                    continue
                if await self._store.list_runnable_steps(execution_id):
                    continue

                wake_at = self._next_wake(execution, graph)
                if wake_at is not None:
                    await self._sleep_until(execution_id, wake_at)
                    continue

                if execution.steps_with_status(StepStatus.AWAITING_APPROVAL):
                    return await self._suspend(execution)

                logger.warning(
                    f"Execution execution_id={execution_id} has no runnable steps "
                    f"(progress {execution.progress()})"
                )
                return execution
        finally:
            if in_flight:
                # a failed store write abandons the pass; let running handlers finish
                await asyncio.gather(*in_flight, return_exceptions=True)

    async def _launch(
        self, execution: Execution, graph: Graph, in_flight: Dict[asyncio.Task, str]
    ) -> Execution:
        limit = self._settings.max_concurrent_steps
        runnable = await self._store.list_runnable_steps(execution.id)
        for step_name in sorted(runnable, key=graph.index):
            if step_name in in_flight.values():
                continue
            if limit is not None and len(in_flight) >= limit:
                break
            claim = await self._store.record_step_start(execution.id, step_name)
            if not claim.acquired:
                logger.debug(
                    f"Step '{step_name}' already claimed for execution_id={execution.id}"
                )
                continue
            if execution.status != ExecutionStatus.RUNNING:
                previous = execution.status
                execution = await self._store.update_execution_status(
                    execution.id, ExecutionStatus.RUNNING
                )
                if previous == ExecutionStatus.PENDING:
                    logger.info(
                        f"Execution {execution.definition_id} started execution_id={execution.id}"
                    )
                    await self._emitter.emit(
                        ev.EXECUTION_STARTED,
                        execution.id,
                        definition_id=execution.definition_id,
                    )
            await self._emitter.emit(
                ev.STEP_STARTED,
                execution.id,
                step_name,
                attempt=claim.step_run.attempt_count + 1,
            )
            task = asyncio.create_task(
                self._runner.run(execution.id, graph, claim.step_run, execution.context)
            )
            in_flight[task] = step_name
        return execution

    def _failure_reason(self, execution: Execution, graph: Graph) -> Optional[StepError]:
        for step_name in graph.order:
            run = execution.step_run(step_name)
            if run is not None and run.terminal_failure and not run.tolerated:
                error = run.last_error or StepError(error_type="step_failed")
                return error.model_copy(
                    update={"details": {**error.details, "step_name": step_name}}
                )
        if execution.cancel_requested:
            return StepError(
                error_type=ERROR_CANCELLED,
                message="Execution was cancelled",
                retryable=False,
            )
        deadline = self._execution_deadline(execution, graph)
        if deadline is not None and deadline <= self._clock():
            return StepError(
                error_type=ERROR_EXECUTION_TIMEOUT,
                message=(
                    f"Execution exceeded {graph.definition.execution_timeout}s"
                ),
                retryable=False,
            )
        return None

    @staticmethod
    def _execution_deadline(execution: Execution, graph: Graph) -> Optional[datetime]:
        timeout = graph.definition.execution_timeout
        if timeout is None:
            return None
        return execution.created_at + timedelta(seconds=timeout)

    def _interrupted_deadline(self, graph: Graph, run) -> Optional[datetime]:
        timeout = self._runner.timeout_for(graph, graph.step(run.step_name))
        if timeout is None or run.started_at is None:
            return None
        return run.started_at + timedelta(
            seconds=timeout + self._settings.interrupted_step_grace
        )

    async def _recover_interrupted(self, execution: Execution, graph: Graph) -> bool:
        """Fail running steps with no live worker. Only called when this pass owns none."""
        now = self._clock()
        recovered = False
        for run in execution.steps_with_status(StepStatus.RUNNING):
            deadline = self._interrupted_deadline(graph, run)
            if deadline is not None and deadline <= now:
                if await self._runner.record_interrupted(execution.id, graph, run):
                    recovered = True
        return recovered

    def _next_wake(self, execution: Execution, graph: Graph) -> Optional[datetime]:
        candidates: List[datetime] = []
        for run in execution.steps:
            if run.status == StepStatus.FAILED and run.next_attempt_at is not None:
                candidates.append(run.next_attempt_at)
            elif run.status == StepStatus.RUNNING:
                deadline = self._interrupted_deadline(graph, run)
                if deadline is not None:
                    candidates.append(deadline)
        # with nothing else to wait for the pass suspends instead of sleeping
        if not candidates:
            return None
        for deadline in (
            self._execution_deadline(execution, graph),
            self._gate.next_deadline(execution, graph),
        ):
            if deadline is not None:
                candidates.append(deadline)
        return min(candidates)

    def _busy_wake(self, execution: Execution, graph: Graph) -> Optional[datetime]:
        """Next moment worth re-checking while this pass has steps in flight."""
        now = self._clock()
        candidates = [
            run.next_attempt_at
            for run in execution.steps
            if run.status == StepStatus.FAILED
            and run.next_attempt_at is not None
            and run.next_attempt_at > now
        ]
        for deadline in (
            self._execution_deadline(execution, graph),
            self._gate.next_deadline(execution, graph),
        ):
            if deadline is not None and deadline > now:
                candidates.append(deadline)
        return min(candidates) if candidates else None

    def _seconds_until(self, when: Optional[datetime]) -> Optional[float]:
        if when is None:
            return None
        return max(0.0, (when - self._clock()).total_seconds())

    async def _sleep_until(self, execution_id: str, when: datetime) -> None:
        event = self._wakeups.setdefault(execution_id, asyncio.Event())
        event.clear()
        try:
            await asyncio.wait_for(event.wait(), self._seconds_until(when))
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    async def _complete(self, execution: Execution, graph: Graph) -> Execution:
        execution = await self._store.update_execution_status(
            execution.id, ExecutionStatus.COMPLETED
        )
        logger.info(f"Execution completed execution_id={execution.id}")
        await self._emitter.emit(ev.EXECUTION_COMPLETED, execution.id)
        await self._run_hook(execution, graph)
        return execution

    async def _suspend(self, execution: Execution) -> Execution:
        if execution.status != ExecutionStatus.AWAITING_APPROVAL:
            execution = await self._store.update_execution_status(
                execution.id, ExecutionStatus.AWAITING_APPROVAL
            )
        logger.info(f"Execution suspended awaiting approval execution_id={execution.id}")
        return execution

    async def _pause(self, execution: Execution) -> Execution:
        if execution.status == ExecutionStatus.PAUSED:
            return execution
        execution = await self._store.update_execution_status(
            execution.id, ExecutionStatus.PAUSED
        )
        logger.info(f"Execution paused execution_id={execution.id}")
        await self._emitter.emit(ev.EXECUTION_PAUSED, execution.id)
        return execution

    async def _fail(self, execution: Execution, graph: Graph, error: StepError) -> Execution:
        succeeded = execution.steps_with_status(StepStatus.SUCCEEDED)
        target = ExecutionStatus.COMPENSATING if succeeded else ExecutionStatus.FAILED
        execution = await self._store.update_execution_status(
            execution.id, target, error=error
        )
        logger.info(
            f"Execution failed execution_id={execution.id}: "
            f"{error.error_type} {error.message}"
        )
        await self._emitter.emit(
            ev.EXECUTION_FAILED, execution.id, error_type=error.error_type
        )
        if error.error_type == ERROR_CANCELLED:
            await self._emitter.emit(ev.EXECUTION_CANCELLED, execution.id)
        if not succeeded:
            await self._run_hook(execution, graph)
            return execution
        await self._emitter.emit(ev.EXECUTION_COMPENSATING, execution.id)
        return await self._compensate(execution, graph)

    async def _compensate(self, execution: Execution, graph: Graph) -> Execution:
        report = await self._compensator.compensate(execution, graph)
        execution = await self._store.update_execution_status(
            execution.id, ExecutionStatus.COMPENSATED
        )
        logger.info(
            f"Execution compensated execution_id={execution.id} "
            f"(rolled back {report.invoked}, failed {report.failed})"
        )
        await self._emitter.emit(
            ev.EXECUTION_COMPENSATED,
            execution.id,
            invoked=report.invoked,
            skipped=report.skipped,
            failed=report.failed,
        )
        await self._run_hook(execution, graph)
        return execution

    async def _run_hook(self, execution: Execution, graph: Graph) -> None:
        """Call the definition's hook for how the execution settled.

        Runs after the terminal status is stored, at most once per process:
        a crash between the two loses the hook call.
        """
        definition = graph.definition
        context: Dict[str, Any] = dict(execution.context)
        if execution.status == ExecutionStatus.COMPLETED:
            name, hook = "on_success", definition.on_success
        elif execution.error is not None and execution.error.error_type == ERROR_CANCELLED:
            name, hook = "on_cancel", definition.on_cancel
        else:
            name, hook = "on_failure", definition.on_failure
            if execution.error is not None:
                context["error"] = execution.error.model_dump()
        if hook is None:
            return
        try:
            await call_handler(hook, context, self._settings.default_step_timeout)
        except Exception as exc:
            logger.error(
                f"Hook {name} of {definition.definition_id} failed for "
                f"execution_id={execution.id}: {exc!r}"
            )
