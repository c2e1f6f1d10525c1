"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set

from ..contracts import ApprovalDecision, ExecutionStatus, StepError, StepOutcome
from .models import Execution, StepClaim, StepRun, TriggerInfo


class ExecutionStore(Protocol):
    """Protocol for execution state persistence backends.

    Every write is durable once the awaited call returns. Operations on an
    unknown execution id raise :class:`~sagaflow.errors.ExecutionNotFound`,
    backend failures raise :class:`~sagaflow.errors.PersistenceError`.
    """

    async def create_execution(
        self,
        definition_id: str,
        initial_context: Dict[str, Any],
        *,
        dependencies: Dict[str, List[str]],
        trigger: Optional[TriggerInfo] = None,
    ) -> Execution:
        """Persist a new ``pending`` execution."""

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Retrieve the execution by id."""

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        definition_id: Optional[str] = None,
    ) -> List[Execution]:
        """Return persisted executions, oldest first."""

    async def list_runnable_steps(self, execution_id: str) -> Set[str]:
        """Steps whose predecessors succeeded and which may be claimed now."""

    async def record_step_start(self, execution_id: str, step_name: str) -> StepClaim:
        """Atomically claim a step, moving it to ``running``."""

    async def record_step_result(
        self, execution_id: str, step_name: str, outcome: StepOutcome
    ) -> StepRun:
        """Record the outcome of a running step."""

    async def merge_context(self, execution_id: str, payload: Dict[str, Any]) -> Execution:
        """Shallow merge ``payload`` into the execution context."""

    async def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error: Optional[StepError] = None,
    ) -> Execution:
        """Move the execution to ``status`` if the transition is allowed."""

    async def resolve_approval(
        self,
        execution_id: str,
        step_name: str,
        decision: ApprovalDecision,
        *,
        error: Optional[StepError] = None,
    ) -> StepRun:
        """Resolve an approval gate that is currently awaiting a decision."""

    async def mark_rolled_back(
        self, execution_id: str, step_name: str, error: Optional[StepError] = None
    ) -> StepRun:
        """Mark a succeeded step as compensated."""

    async def record_compensation_error(
        self, execution_id: str, error: StepError
    ) -> Execution:
        """Append a rollback failure to the execution."""

    async def request_cancellation(self, execution_id: str) -> Execution:
        """Persist a cancellation request."""

    async def request_pause(self, execution_id: str) -> Execution:
        """Ask the execution to pause once its in-flight steps finish."""

    async def resume_execution(
        self, execution_id: str, context: Optional[Dict[str, Any]] = None
    ) -> Execution:
        """Clear a pause and merge ``context``; raises InvalidTransition if not paused."""

    async def get_schedule_state(self, schedule_id: str) -> Optional[datetime]:
        """Return the last fire time recorded for a schedule."""

    async def save_schedule_state(self, schedule_id: str, last_fire_at: datetime) -> None:
        """Persist the last fire time for a schedule."""
