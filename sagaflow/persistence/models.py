"""Data models for persisted execution state.

The ``claim_step``/``apply_*`` helpers hold the state machine rules shared by
every store backend. Backends call them on a freshly loaded execution while
holding their own lock or transaction, then write the result back.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Set

from pydantic import BaseModel, Field

from ..constants import ERROR_APPROVAL_REJECTED
from ..contracts import (
    ApprovalDecision,
    AwaitingApproval,
    ExecutionStatus,
    Failure,
    Skipped,
    StepError,
    StepOutcome,
    StepStatus,
    Success,
    TriggerKind,
    can_transition,
    utcnow,
)
from ..errors import (
    ApprovalRejected,
    InvalidTransition,
    NotAwaitingApproval,
)


class StepRun(BaseModel):
    """Persisted state of one step within one execution."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    attempt_count: int = 0
    last_error: Optional[StepError] = None
    result: Optional[Dict[str, Any]] = None
    approval: Optional[ApprovalDecision] = None
    next_attempt_at: Optional[datetime] = None
    awaiting_since: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rollback_error: Optional[StepError] = None
    skip_reason: Optional[str] = None
    tolerated: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def terminal_failure(self) -> bool:
        return self.status == StepStatus.FAILED and self.next_attempt_at is None

    @property
    def settled(self) -> bool:
        """Finished in a way that lets dependents run."""
        if self.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED):
            return True
        return self.terminal_failure and self.tolerated

    def retry_due(self, now: datetime) -> bool:
        return (
            self.status == StepStatus.FAILED
            and self.next_attempt_at is not None
            and self.next_attempt_at <= now
        )


class TriggerInfo(BaseModel):
    kind: TriggerKind = TriggerKind.MANUAL
    scheduled_at: Optional[datetime] = None
    schedule_id: Optional[str] = None


class Execution(BaseModel):
    """One run of a workflow definition."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    definition_id: str
    initial_context: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    dependencies: Dict[str, List[str]] = Field(default_factory=dict)
    steps: List[StepRun] = Field(default_factory=list)
    error: Optional[StepError] = None
    compensation_errors: List[StepError] = Field(default_factory=list)
    cancel_requested: bool = False
    pause_requested: bool = False
    paused_at: Optional[datetime] = None
    trigger: TriggerInfo = Field(default_factory=TriggerInfo)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def step_run(self, step_name: str) -> Optional[StepRun]:
        return next((s for s in self.steps if s.step_name == step_name), None)

    def predecessors_settled(self, step_name: str) -> bool:
        for pred in self.dependencies.get(step_name, []):
            run = self.step_run(pred)
            if run is None or not run.settled:
                return False
        return True

    @property
    def accepts_claims(self) -> bool:
        return not (
            self.status.terminal
            or self.status in (ExecutionStatus.COMPENSATING, ExecutionStatus.PAUSED)
            or self.pause_requested
        )

    def runnable_steps(self, now: Optional[datetime] = None) -> Set[str]:
        """Steps that may be claimed right now."""
        if not self.accepts_claims:
            return set()
        now = now or utcnow()
        runnable: Set[str] = set()
        for name in self.dependencies:
            if not self.predecessors_settled(name):
                continue
            run = self.step_run(name)
            if run is None or run.status == StepStatus.PENDING or run.retry_due(now):
                runnable.add(name)
        return runnable

    def steps_with_status(self, status: StepStatus) -> List[StepRun]:
        return [s for s in self.steps if s.status == status]

    def progress(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for run in self.steps:
            counts[run.status.value] = counts.get(run.status.value, 0) + 1
        counts["not_started"] = len(self.dependencies) - len(self.steps)
        return counts

    @property
    def all_settled(self) -> bool:
        for name in self.dependencies:
            run = self.step_run(name)
            if run is None or not run.settled:
                return False
        return True


class StepClaim(NamedTuple):
    step_run: Optional[StepRun]
    acquired: bool


# ----------------------------------------------------------------------
# State machine helpers


def _replace_run(execution: Execution, run: StepRun) -> None:
    for i, existing in enumerate(execution.steps):
        if existing.step_name == run.step_name:
            execution.steps[i] = run
            return
    execution.steps.append(run)


def claim_step(
    execution: Execution, step_name: str, now: Optional[datetime] = None
) -> StepClaim:
    """Compare-and-set a step to ``running``.

    Claimable: no StepRun yet, a ``pending`` StepRun, or a ``failed`` StepRun
    whose retry is due. Anything else returns the existing run unacquired.
    """
    now = now or utcnow()
    if step_name not in execution.dependencies:
        raise KeyError(f"Unknown step '{step_name}' for execution {execution.id}")
    run = execution.step_run(step_name)
    claimable = (
        execution.accepts_claims
        and execution.predecessors_settled(step_name)
        and (run is None or run.status == StepStatus.PENDING or run.retry_due(now))
    )
    if not claimable:
        return StepClaim(run, False)
    run = (run or StepRun(step_name=step_name, created_at=now)).model_copy(
        update={
            "status": StepStatus.RUNNING,
            "started_at": now,
            "completed_at": None,
            "next_attempt_at": None,
            "updated_at": now,
        }
    )
    _replace_run(execution, run)
    execution.updated_at = now
    return StepClaim(run, True)


def apply_outcome(
    execution: Execution,
    step_name: str,
    outcome: StepOutcome,
    now: Optional[datetime] = None,
) -> StepRun:
    """Record the outcome of a running step, merging successful payloads."""
    now = now or utcnow()
    run = execution.step_run(step_name)
    if run is None or run.status != StepStatus.RUNNING:
        current = run.status.value if run else "absent"
        raise InvalidTransition(f"step '{step_name}'", current, outcome.kind)

    if isinstance(outcome, Success):
        update = {
            "status": StepStatus.SUCCEEDED,
            "attempt_count": run.attempt_count + 1,
            "result": dict(outcome.payload),
            "completed_at": now,
        }
        execution.context.update(outcome.payload)
    elif isinstance(outcome, Failure):
        update = {
            "status": StepStatus.FAILED,
            "attempt_count": run.attempt_count + 1,
            "last_error": outcome.error,
            "next_attempt_at": outcome.retry_at,
            "tolerated": outcome.tolerated and outcome.terminal,
            "completed_at": now,
        }
    elif isinstance(outcome, Skipped):
        # a skip after an error still used up an attempt
        attempts = run.attempt_count + (1 if outcome.error is not None else 0)
        update = {
            "status": StepStatus.SKIPPED,
            "attempt_count": attempts,
            "skip_reason": outcome.reason,
            "last_error": outcome.error or run.last_error,
            "next_attempt_at": None,
            "completed_at": now,
        }
    elif isinstance(outcome, AwaitingApproval):
        update = {
            "status": StepStatus.AWAITING_APPROVAL,
            "approval": ApprovalDecision.PENDING,
            "awaiting_since": now,
        }
    else:
        raise TypeError(f"Unsupported outcome: {outcome!r}")

    update["updated_at"] = now
    run = run.model_copy(update=update)
    _replace_run(execution, run)
    execution.updated_at = now
    return run


def apply_approval(
    execution: Execution,
    step_name: str,
    decision: ApprovalDecision,
    error: Optional[StepError] = None,
    now: Optional[datetime] = None,
) -> StepRun:
    """Resolve a pending approval gate.

    Raises :class:`NotAwaitingApproval` when the step is not suspended or the
    execution can no longer make forward progress.
    """
    now = now or utcnow()
    run = execution.step_run(step_name)
    if (
        run is None
        or run.status != StepStatus.AWAITING_APPROVAL
        or execution.status.terminal
        or execution.status == ExecutionStatus.COMPENSATING
    ):
        raise NotAwaitingApproval(execution.id, step_name)

    if decision == ApprovalDecision.APPROVED:
        update = {"status": StepStatus.PENDING, "approval": ApprovalDecision.APPROVED}
    elif decision == ApprovalDecision.REJECTED:
        update = {
            "status": StepStatus.FAILED,
            "approval": ApprovalDecision.REJECTED,
            "next_attempt_at": None,
            "completed_at": now,
            "last_error": error
            or StepError(
                error_type=ERROR_APPROVAL_REJECTED,
                message=str(ApprovalRejected(step_name)),
                retryable=False,
            ),
        }
    else:
        raise ValueError(f"Approval decision must be approved or rejected: {decision}")

    update["updated_at"] = now
    run = run.model_copy(update=update)
    _replace_run(execution, run)
    execution.updated_at = now
    return run


def apply_rolled_back(
    execution: Execution,
    step_name: str,
    error: Optional[StepError] = None,
    now: Optional[datetime] = None,
) -> StepRun:
    now = now or utcnow()
    run = execution.step_run(step_name)
    if run is None:
        raise InvalidTransition(f"step '{step_name}'", "absent", StepStatus.ROLLED_BACK.value)
    if run.status == StepStatus.ROLLED_BACK:
        return run
    if run.status != StepStatus.SUCCEEDED:
        raise InvalidTransition(
            f"step '{step_name}'", run.status.value, StepStatus.ROLLED_BACK.value
        )
    run = run.model_copy(
        update={
            "status": StepStatus.ROLLED_BACK,
            "rollback_error": error,
            "updated_at": now,
        }
    )
    _replace_run(execution, run)
    execution.updated_at = now
    return run


def apply_status(
    execution: Execution,
    status: ExecutionStatus,
    error: Optional[StepError] = None,
    now: Optional[datetime] = None,
) -> Execution:
    now = now or utcnow()
    if not can_transition(execution.status, status):
        raise InvalidTransition(
            f"execution {execution.id}", execution.status.value, status.value
        )
    execution.status = status
    if error is not None and execution.error is None:
        execution.error = error
    if status.terminal and execution.completed_at is None:
        execution.completed_at = now
    if status == ExecutionStatus.PAUSED and execution.paused_at is None:
        execution.paused_at = now
    execution.updated_at = now
    return execution


def apply_pause_request(execution: Execution, now: Optional[datetime] = None) -> Execution:
    """Flag the execution to pause once its in-flight steps finish.

    Terminal and compensating executions are returned unchanged.
    """
    if execution.status.terminal or execution.status == ExecutionStatus.COMPENSATING:
        return execution
    execution.pause_requested = True
    execution.updated_at = now or utcnow()
    return execution


def apply_resume(
    execution: Execution,
    context: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Execution:
    """Clear a pause, merging ``context`` into the execution context.

    Raises :class:`InvalidTransition` when the execution is neither paused
    nor asked to pause.
    """
    now = now or utcnow()
    if not (execution.pause_requested or execution.status == ExecutionStatus.PAUSED):
        raise InvalidTransition(
            f"execution {execution.id}", execution.status.value, ExecutionStatus.RUNNING.value
        )
    execution.pause_requested = False
    if context:
        execution.context.update(context)
    if execution.status == ExecutionStatus.PAUSED:
        apply_status(execution, ExecutionStatus.RUNNING, now=now)
        execution.paused_at = None
    execution.updated_at = now
    return execution
