"""Public entry point wiring the sagaflow components together."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from . import events as ev
from .approval import ApprovalGate, SignalResult
from .compensation import CompensationEngine
from .config import SagaflowConfig
from .contracts import ExecutionStatus, WorkflowDefinition, utcnow
from .coordinator import ExecutionCoordinator
from .dispatch import TriggerDispatcher
from .errors import ExecutionNotFound, InvalidTransition, UnknownDefinition
from .events import EventEmitter
from .execute import StepRunner
from .graph import Graph
from .persistence import Execution, ExecutionStore, TriggerInfo, get_repository
from .registry import DefinitionRegistry
from .schedule import ScheduleRegistration
from .transports import BaseTransport
from .utils.retry import RetryEvaluator

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Register definitions, start executions and resolve approvals.

    Executions run as background tasks on the current event loop. Nothing
    waits on a suspended execution: approvals, cancellations and timers
    schedule a new coordinator pass.
    """

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        config: Optional[SagaflowConfig] = None,
        transport: Optional[BaseTransport] = None,
        registry: Optional[DefinitionRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or SagaflowConfig()
        self.store = store or get_repository(config=self.config)
        self.registry = registry or DefinitionRegistry()
        settings = self.config.engine
        self.events = EventEmitter(transport, history_limit=settings.event_history_limit)
        self._clock = clock

        self.runner = StepRunner(
            self.store,
            RetryEvaluator(settings.default_retry, rng),
            self.events,
            settings.default_step_timeout,
            clock,
        )
        self.gate = ApprovalGate(self.store, self.events, clock)
        self.compensator = CompensationEngine(self.store, self.events)
        self.coordinator = ExecutionCoordinator(
            self.store,
            self.registry,
            self.runner,
            self.gate,
            self.compensator,
            self.events,
            settings,
            clock,
        )
        self.dispatcher = TriggerDispatcher(
            self._launch, self.store, self.config.scheduler, clock
        )
        self._tasks: Dict[str, Set[asyncio.Task]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    # ------------------------------------------------------------------
    # Definitions
    def register(self, definition: WorkflowDefinition) -> Graph:
        graph = self.registry.register(definition)
        if definition.schedule:
            self.dispatcher.register_schedule(
                definition.definition_id, definition.schedule, definition.catch_up
            )
        return graph

    def register_schedule(
        self, definition_id: str, cron: str, catch_up_policy=None, catch_up_window=None
    ) -> ScheduleRegistration:
        graph = self.registry.get(definition_id)
        return self.dispatcher.register_schedule(
            graph.definition_id, cron, catch_up_policy, catch_up_window
        )

    # ------------------------------------------------------------------
    # Executions
    async def start_execution(
        self,
        definition_id: str,
        initial_context: Optional[Dict[str, Any]] = None,
        *,
        wait: bool = False,
    ) -> str:
        """Create and launch an execution; with ``wait`` return once it settles."""
        execution_id = await self.dispatcher.start_execution(definition_id, initial_context)
        if wait:
            await self.wait_for(execution_id)
        return execution_id

    async def _launch(
        self, definition_id: str, initial_context: Dict[str, Any], trigger: TriggerInfo
    ) -> str:
        graph = self.registry.get(definition_id)
        execution = await self.store.create_execution(
            graph.definition_id,
            initial_context,
            dependencies=graph.dependencies(),
            trigger=trigger,
        )
        logger.info(
            f"Created execution of {graph.definition_id} execution_id={execution.id} "
            f"trigger={trigger.kind.value}"
        )
        self._spawn(execution.id)
        return execution.id

    async def signal_approval(
        self,
        execution_id: str,
        step_name: str,
        decision,
        reason: Optional[str] = None,
    ) -> SignalResult:
        result = await self.gate.signal(execution_id, step_name, decision, reason)
        if result == SignalResult.ACCEPTED:
            self._disarm(execution_id)
            self.coordinator.notify(execution_id)
            self._spawn(execution_id)
        return result

    async def cancel(self, execution_id: str) -> bool:
        """Request cancellation. Returns ``False`` if already terminal."""
        execution = await self.store.request_cancellation(execution_id)
        if execution.status.terminal:
            return False
        logger.info(f"Cancellation requested for execution_id={execution_id}")
        self._disarm(execution_id)
        self.coordinator.notify(execution_id)
        self._spawn(execution_id)
        return True

    async def pause(self, execution_id: str) -> bool:
        """Pause once in-flight steps finish. Returns ``False`` if it cannot pause."""
        execution = await self.store.request_pause(execution_id)
        if not execution.pause_requested:
            return False
        logger.info(f"Pause requested for execution_id={execution_id}")
        self._disarm(execution_id)
        self.coordinator.notify(execution_id)
        self._spawn(execution_id)
        return True

    async def resume(
        self, execution_id: str, context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Resume a paused execution, merging ``context`` first.

        Returns ``False`` when the execution is neither paused nor pausing.
        """
        try:
            await self.store.resume_execution(execution_id, context)
        except InvalidTransition:
            return False
        logger.info(f"Resumed execution_id={execution_id}")
        await self.events.emit(ev.EXECUTION_RESUMED, execution_id)
        self._spawn(execution_id)
        return True

    async def get_execution(self, execution_id: str) -> Optional[Execution]:
        return await self.store.get_execution(execution_id)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> List[Execution]:
        return await self.store.list_executions(status=status, definition_id=definition_id)

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Wait until no coordinator pass for ``execution_id`` is pending."""

        async def _drain() -> None:
            while self._tasks.get(execution_id):
                # failed passes are already logged by the task callback
                await asyncio.gather(
                    *list(self._tasks[execution_id]), return_exceptions=True
                )

        await asyncio.wait_for(_drain(), timeout)
        execution = await self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    # ------------------------------------------------------------------
    # Recovery and timers
    async def recover(self) -> List[str]:
        """Resume every non-terminal execution found in the store."""
        resumed: List[str] = []
        for execution in await self.store.list_executions():
            if execution.status.terminal:
                continue
            if execution.status == ExecutionStatus.PAUSED and not execution.cancel_requested:
                continue
            if execution.definition_id not in self.registry:
                logger.warning(
                    f"Cannot recover execution_id={execution.id}: "
                    f"{execution.definition_id} is not registered"
                )
                continue
            logger.info(
                f"Recovering execution_id={execution.id} in status {execution.status.value}"
            )
            self._spawn(execution.id)
            resumed.append(execution.id)
        return resumed

    async def sweep(self) -> List[str]:
        """Expire overdue approval gates and settle the affected executions."""
        swept: List[str] = []
        for execution in await self.store.list_executions(
            status=ExecutionStatus.AWAITING_APPROVAL
        ):
            try:
                graph = self.registry.get(execution.definition_id)
            except UnknownDefinition:
                continue
            if self.gate.overdue(execution, graph):
                self._disarm(execution.id)
                await self._run_pass(execution.id)
                swept.append(execution.id)
        return swept

    def _spawn(self, execution_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run_pass(execution_id))
        tasks = self._tasks.setdefault(execution_id, set())
        tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            tasks.discard(t)
            if not tasks:
                self._tasks.pop(execution_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    f"Coordinator pass failed for execution_id={execution_id}: "
                    f"{t.exception()}"
                )

        task.add_done_callback(_done)
        return task

    async def _run_pass(self, execution_id: str) -> Execution:
        execution = await self.coordinator.run(execution_id)
        self._arm(execution)
        return execution

    def _arm(self, execution: Execution) -> None:
        if execution.status != ExecutionStatus.AWAITING_APPROVAL:
            return
        graph = self.registry.get(execution.definition_id)
        deadline = self.gate.next_deadline(execution, graph)
        if deadline is None:
            return
        self._disarm(execution.id)
        delay = max(0.0, (deadline - self._clock()).total_seconds())
        loop = asyncio.get_running_loop()
        self._timers[execution.id] = loop.call_later(delay, self._spawn, execution.id)

    def _disarm(self, execution_id: str) -> None:
        handle = self._timers.pop(execution_id, None)
        if handle is not None:
            handle.cancel()

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self, lifespan: Optional[float] = None) -> None:
        await self.recover()
        self.dispatcher.start(lifespan)

    async def stop(self) -> None:
        await self.dispatcher.stop()
        for execution_id in list(self._timers):
            self._disarm(execution_id)
        pending = [t for tasks in self._tasks.values() for t in tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
