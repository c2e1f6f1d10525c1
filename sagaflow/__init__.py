"""sagaflow - durable workflow orchestration with approvals and compensation."""

from .approval import ApprovalGate, SignalResult
from .compensation import CompensationEngine, CompensationReport
from .config import SagaflowConfig, load_config
from .contracts import (
    ApprovalDecision,
    AwaitingApproval,
    CatchUpPolicy,
    ExecutionStatus,
    Failure,
    OnError,
    RetryPolicy,
    Skipped,
    StepDefinition,
    StepError,
    StepStatus,
    Success,
    TriggerKind,
    WorkflowDefinition,
    fail,
    ok,
)
from .coordinator import ExecutionCoordinator
from .dispatch import TriggerDispatcher
from .engine import WorkflowEngine
from .errors import (
    ApprovalRejected,
    CompensationError,
    CycleDetected,
    DefinitionError,
    DuplicateStepName,
    ExecutionNotFound,
    InvalidTransition,
    NotAwaitingApproval,
    PersistenceError,
    SagaflowError,
    StepFailed,
    UnknownDefinition,
    UnknownPredecessor,
)
from .events import EventEmitter, LifecycleEvent
from .execute import StepRunner
from .graph import Graph, compile_definition
from .persistence import (
    Execution,
    ExecutionStore,
    InMemoryExecutionStore,
    SQLiteExecutionStore,
    StepRun,
    get_repository,
)
from .registry import DefinitionRegistry
from .transports import BaseTransport, InMemoryTransport, get_transport

__version__ = "0.1.0"

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRejected",
    "AwaitingApproval",
    "BaseTransport",
    "CatchUpPolicy",
    "CompensationEngine",
    "CompensationError",
    "CompensationReport",
    "CycleDetected",
    "DefinitionError",
    "DefinitionRegistry",
    "DuplicateStepName",
    "EventEmitter",
    "Execution",
    "ExecutionCoordinator",
    "ExecutionNotFound",
    "ExecutionStatus",
    "ExecutionStore",
    "Failure",
    "Graph",
    "InMemoryExecutionStore",
    "InMemoryTransport",
    "InvalidTransition",
    "LifecycleEvent",
    "NotAwaitingApproval",
    "OnError",
    "PersistenceError",
    "RetryPolicy",
    "SQLiteExecutionStore",
    "SagaflowConfig",
    "SagaflowError",
    "SignalResult",
    "Skipped",
    "StepDefinition",
    "StepError",
    "StepFailed",
    "StepRun",
    "StepRunner",
    "StepStatus",
    "Success",
    "TriggerDispatcher",
    "TriggerKind",
    "UnknownDefinition",
    "UnknownPredecessor",
    "WorkflowDefinition",
    "WorkflowEngine",
    "compile_definition",
    "fail",
    "get_repository",
    "get_transport",
    "load_config",
    "ok",
]
