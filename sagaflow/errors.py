"""Exception hierarchy for sagaflow."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SagaflowError(Exception):
    """Base class for all sagaflow errors."""


class DefinitionError(SagaflowError):
    """A workflow definition cannot be compiled into a graph."""


class DuplicateStepName(DefinitionError):
    def __init__(self, step_name: str) -> None:
        self.step_name = step_name
        super().__init__(f"Step '{step_name}' is defined more than once")


class UnknownPredecessor(DefinitionError):
    def __init__(self, step_name: str, predecessor: str) -> None:
        self.step_name = step_name
        self.predecessor = predecessor
        if step_name == predecessor:
            message = f"Step '{step_name}' cannot run after itself"
        else:
            message = f"Step '{step_name}' runs after unknown step '{predecessor}'"
        super().__init__(message)


class CycleDetected(DefinitionError):
    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class UnknownDefinition(SagaflowError):
    """No compiled definition is registered under the requested id."""


class StepFailed(SagaflowError):
    """Raised by a step handler to report an explicit, structured failure."""

    def __init__(
        self,
        message: str,
        error_type: str = "step_failed",
        retryable: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.error_type = error_type
        self.retryable = retryable
        self.details = details or {}
        super().__init__(message)


class ApprovalRejected(SagaflowError):
    """An approval gate was rejected, by signal or by timeout."""

    error_type = "approval_rejected"

    def __init__(self, step_name: str, reason: str = "rejected") -> None:
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Approval for step '{step_name}' {reason}")


class CompensationError(SagaflowError):
    """A rollback handler failed. Recorded, never raised out of compensation."""

    def __init__(self, step_name: str, cause: str) -> None:
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"Rollback of step '{step_name}' failed: {cause}")


class PersistenceError(SagaflowError):
    """The execution store could not complete an operation."""


class InvalidTransition(SagaflowError):
    def __init__(self, subject: str, current: str, new: str) -> None:
        self.subject = subject
        self.current = current
        self.new = new
        super().__init__(f"Invalid transition for {subject}: {current} -> {new}")


class ExecutionNotFound(SagaflowError):
    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class NotAwaitingApproval(SagaflowError):
    def __init__(self, execution_id: str, step_name: str) -> None:
        self.execution_id = execution_id
        self.step_name = step_name
        super().__init__(
            f"Step '{step_name}' of execution '{execution_id}' is not awaiting approval"
        )
