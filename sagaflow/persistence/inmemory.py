"""In-memory implementation of the execution store."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ..contracts import ApprovalDecision, ExecutionStatus, StepError, StepOutcome, utcnow
from ..errors import ExecutionNotFound
from .models import (
    Execution,
    StepClaim,
    StepRun,
    TriggerInfo,
    apply_approval,
    apply_outcome,
    apply_pause_request,
    apply_resume,
    apply_rolled_back,
    apply_status,
    claim_step,
)
from .repository import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Callers always receive copies, so
    mutating a returned execution never changes stored state.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._executions: Dict[str, Execution] = {}
        self._schedules: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _get(self, execution_id: str) -> Execution:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(execution_id)
        return execution

    # ------------------------------------------------------------------
    async def create_execution(
        self,
        definition_id: str,
        initial_context: Dict[str, Any],
        *,
        dependencies: Dict[str, List[str]],
        trigger: Optional[TriggerInfo] = None,
    ) -> Execution:
        now = self._clock()
        execution = Execution(
            definition_id=definition_id,
            initial_context=dict(initial_context),
            context=dict(initial_context),
            dependencies={k: list(v) for k, v in dependencies.items()},
            trigger=trigger or TriggerInfo(),
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._executions[execution.id] = execution
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> List[Execution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (status is None or e.status == status)
            and (definition_id is None or e.definition_id == definition_id)
        ]

    async def list_runnable_steps(self, execution_id: str) -> Set[str]:
        return self._get(execution_id).runnable_steps(self._clock())

    async def record_step_start(self, execution_id: str, step_name: str) -> StepClaim:
        async with self._lock:
            claim = claim_step(self._get(execution_id), step_name, self._clock())
        run = claim.step_run.model_copy(deep=True) if claim.step_run else None
        return StepClaim(run, claim.acquired)

    async def record_step_result(
        self, execution_id: str, step_name: str, outcome: StepOutcome
    ) -> StepRun:
        async with self._lock:
            run = apply_outcome(self._get(execution_id), step_name, outcome, self._clock())
        return run.model_copy(deep=True)

    async def merge_context(self, execution_id: str, payload: Dict[str, Any]) -> Execution:
        async with self._lock:
            execution = self._get(execution_id)
            execution.context.update(payload)
            execution.updated_at = self._clock()
        return execution.model_copy(deep=True)

    async def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error: Optional[StepError] = None,
    ) -> Execution:
        async with self._lock:
            execution = apply_status(self._get(execution_id), status, error, self._clock())
        return execution.model_copy(deep=True)

    async def resolve_approval(
        self,
        execution_id: str,
        step_name: str,
        decision: ApprovalDecision,
        *,
        error: Optional[StepError] = None,
    ) -> StepRun:
        async with self._lock:
            run = apply_approval(
                self._get(execution_id), step_name, decision, error, self._clock()
            )
        return run.model_copy(deep=True)

    async def mark_rolled_back(
        self, execution_id: str, step_name: str, error: Optional[StepError] = None
    ) -> StepRun:
        async with self._lock:
            run = apply_rolled_back(
                self._get(execution_id), step_name, error, self._clock()
            )
        return run.model_copy(deep=True)

    async def record_compensation_error(
        self, execution_id: str, error: StepError
    ) -> Execution:
        async with self._lock:
            execution = self._get(execution_id)
            execution.compensation_errors.append(error)
            execution.updated_at = self._clock()
        return execution.model_copy(deep=True)

    async def request_cancellation(self, execution_id: str) -> Execution:
        async with self._lock:
            execution = self._get(execution_id)
            if not execution.status.terminal:
                execution.cancel_requested = True
                execution.updated_at = self._clock()
        return execution.model_copy(deep=True)

    async def request_pause(self, execution_id: str) -> Execution:
        async with self._lock:
            execution = apply_pause_request(self._get(execution_id), self._clock())
        return execution.model_copy(deep=True)

    async def resume_execution(
        self, execution_id: str, context: Optional[Dict[str, Any]] = None
    ) -> Execution:
        async with self._lock:
            execution = apply_resume(self._get(execution_id), context, self._clock())
        return execution.model_copy(deep=True)

    async def get_schedule_state(self, schedule_id: str) -> Optional[datetime]:
        return self._schedules.get(schedule_id)

    async def save_schedule_state(self, schedule_id: str, last_fire_at: datetime) -> None:
        async with self._lock:
            self._schedules[schedule_id] = last_fire_at
