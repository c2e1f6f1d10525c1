"""Core contracts for sagaflow workflow definitions and step outcomes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import (
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_MULTIPLIER,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.COMPENSATED}
)

EXECUTION_TRANSITIONS: Dict[ExecutionStatus, frozenset] = {
    ExecutionStatus.PENDING: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
            ExecutionStatus.FAILED,
            ExecutionStatus.COMPENSATING,
        }
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.AWAITING_APPROVAL,
            ExecutionStatus.PAUSED,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.COMPENSATING,
        }
    ),
    ExecutionStatus.AWAITING_APPROVAL: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
            ExecutionStatus.FAILED,
            ExecutionStatus.COMPENSATING,
        }
    ),
    ExecutionStatus.PAUSED: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.COMPENSATING}
    ),
    ExecutionStatus.COMPENSATING: frozenset({ExecutionStatus.COMPENSATED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.COMPENSATED: frozenset(),
}


def can_transition(current: ExecutionStatus, new: ExecutionStatus) -> bool:
    """Return ``True`` if an execution may move from ``current`` to ``new``."""
    return current == new or new in EXECUTION_TRANSITIONS[current]


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


class OnError(str, Enum):
    """What a terminal step failure does to the rest of the execution."""

    FAIL = "fail"
    SKIP = "skip"
    CONTINUE = "continue"


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CatchUpPolicy(str, Enum):
    """What to do with scheduled fires missed while the process was down."""

    SKIP = "skip"
    RUN_ONCE = "run_once"
    REPLAY = "replay"


class TriggerKind(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class StepError(BaseModel):
    """Structured error captured for a failed step attempt or rollback."""

    error_type: str
    message: str = ""
    retryable: bool = True
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, retryable: bool = True) -> "StepError":
        return cls(error_type=type(exc).__name__, message=str(exc), retryable=retryable)


class RetryPolicy(BaseModel):
    """Retry configuration for a step, or the default for a definition."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    initial_delay: float = Field(default=DEFAULT_INITIAL_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)
    multiplier: float = Field(default=DEFAULT_MULTIPLIER, ge=1)
    jitter: bool = False
    retry_on: Tuple[str, ...] = ()
    no_retry_on: Tuple[str, ...] = ()

    def allows(self, attempt: int) -> bool:
        """Return True if another attempt is allowed after ``attempt``."""
        return attempt < self.max_attempts

    def retries_error(self, error: StepError) -> bool:
        """Apply the error filters; ``no_retry_on`` takes precedence."""
        if not error.retryable:
            return False
        if error.error_type in self.no_retry_on:
            return False
        if self.retry_on:
            return error.error_type in self.retry_on
        return True


# ----------------------------------------------------------------------
# Tagged outcomes


class Success(BaseModel):
    kind: Literal["success"] = "success"
    payload: Dict[str, Any] = Field(default_factory=dict)


class Failure(BaseModel):
    kind: Literal["failure"] = "failure"
    error: StepError
    retry_at: Optional[datetime] = None
    # a terminal failure the execution carries on past (``OnError.CONTINUE``)
    tolerated: bool = False

    @property
    def terminal(self) -> bool:
        return self.retry_at is None


class AwaitingApproval(BaseModel):
    kind: Literal["awaiting_approval"] = "awaiting_approval"


class Skipped(BaseModel):
    """The step did not run, or its failure was converted into a skip."""

    kind: Literal["skipped"] = "skipped"
    reason: str
    error: Optional[StepError] = None


StepOutcome = Union[Success, Failure, AwaitingApproval, Skipped]


def ok(payload: Optional[Dict[str, Any]] = None) -> Success:
    """Build a successful outcome carrying a context delta."""
    return Success(payload=payload or {})


def fail(
    message: str,
    error_type: str = "step_failed",
    retryable: bool = True,
    **details: Any,
) -> Failure:
    """Build an explicit failure outcome from inside a handler."""
    return Failure(
        error=StepError(
            error_type=error_type, message=message, retryable=retryable, details=details
        )
    )


# ----------------------------------------------------------------------
# Definitions


StepHandler = Callable[[Dict[str, Any]], Any]
StepCondition = Callable[[Dict[str, Any]], Any]


class StepDefinition(BaseModel):
    """Defines one step in a workflow.

    ``when`` is checked against the context before the step runs; a falsy
    result, or a condition that raises, records the step as skipped.
    ``on_error`` decides what a terminal failure does to the execution.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    handler: Callable[..., Any]
    after: Tuple[str, ...] = ()
    rollback: Optional[Callable[..., Any]] = None
    await_approval: bool = False
    approval_timeout: Optional[float] = Field(default=None, gt=0)
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    when: Optional[Callable[..., Any]] = None
    on_error: OnError = OnError.FAIL

    @field_validator("after", mode="before")
    @classmethod
    def _normalize_after(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        return tuple(value)

    @property
    def has_rollback(self) -> bool:
        return self.rollback is not None


class WorkflowDefinition(BaseModel):
    """Immutable workflow definition identified by ``name`` and ``version``.

    ``on_success``, ``on_failure`` and ``on_cancel`` are called with a copy of
    the context once an execution settles; ``on_failure`` also finds the
    execution error under the ``"error"`` key. A hook that raises is logged
    and does not change the execution outcome.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    version: int = Field(default=1, ge=1)
    steps: Tuple[StepDefinition, ...] = ()
    retry: Optional[RetryPolicy] = None
    step_timeout: Optional[float] = Field(default=None, gt=0)
    execution_timeout: Optional[float] = Field(default=None, gt=0)
    schedule: Optional[str] = None
    catch_up: Optional[CatchUpPolicy] = None
    description: Optional[str] = None
    tags: Tuple[str, ...] = ()
    on_success: Optional[Callable[..., Any]] = None
    on_failure: Optional[Callable[..., Any]] = None
    on_cancel: Optional[Callable[..., Any]] = None

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v or "@" in v:
            raise ValueError("name must be non-empty and may not contain '@'")
        return v

    @property
    def definition_id(self) -> str:
        return f"{self.name}@{self.version}"

    def get_step(self, name: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.name == name), None)

    def with_step(
        self,
        name: str,
        handler: StepHandler,
        *,
        after: Union[str, Tuple[str, ...], list, None] = None,
        rollback: Optional[StepHandler] = None,
        await_approval: bool = False,
        approval_timeout: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        when: Optional[StepCondition] = None,
        on_error: Union[OnError, str] = OnError.FAIL,
    ) -> "WorkflowDefinition":
        """Return a copy of this definition with one more step appended."""
        step = StepDefinition(
            name=name,
            handler=handler,
            after=after,
            rollback=rollback,
            await_approval=await_approval,
            approval_timeout=approval_timeout,
            retry=retry,
            timeout=timeout,
            when=when,
            on_error=on_error,
        )
        return self.model_copy(update={"steps": self.steps + (step,)})


def parse_definition_id(definition_id: str) -> Tuple[str, Optional[int]]:
    """Split ``"name@version"`` into its parts; version is optional."""
    name, sep, version = definition_id.partition("@")
    if not sep:
        return name, None
    return name, int(version)
