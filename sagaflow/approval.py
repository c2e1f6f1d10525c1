"""Approval gates: suspend a step until an external decision arrives."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from . import events as ev
from .constants import ERROR_APPROVAL_TIMEOUT
from .contracts import ApprovalDecision, StepError, StepStatus, utcnow
from .errors import ApprovalRejected, ExecutionNotFound, NotAwaitingApproval
from .events import EventEmitter
from .graph import Graph
from .persistence import Execution, ExecutionStore

logger = logging.getLogger(__name__)


class SignalResult(str, Enum):
    ACCEPTED = "accepted"
    NOT_AWAITING_APPROVAL = "not_awaiting_approval"
    NOT_FOUND = "not_found"


def _coerce_decision(decision) -> ApprovalDecision:
    if isinstance(decision, bool):
        return ApprovalDecision.APPROVED if decision else ApprovalDecision.REJECTED
    decision = ApprovalDecision(decision)
    if decision == ApprovalDecision.PENDING:
        raise ValueError("An approval signal must approve or reject")
    return decision


class ApprovalGate:
    """Resolve suspended steps by signal or by timeout.

    The gate holds no waiting task; the suspension is the persisted
    ``awaiting_approval`` status. Callers resume the execution after an
    accepted signal.
    """

    def __init__(
        self,
        store: ExecutionStore,
        emitter: Optional[EventEmitter] = None,
        clock=utcnow,
    ) -> None:
        self._store = store
        self._emitter = emitter or EventEmitter()
        self._clock = clock

    async def signal(
        self,
        execution_id: str,
        step_name: str,
        decision,
        reason: Optional[str] = None,
    ) -> SignalResult:
        """Apply an approve/reject decision. Duplicates are not accepted."""
        decision = _coerce_decision(decision)
        error = None
        if decision == ApprovalDecision.REJECTED and reason:
            error = StepError(
                error_type=ApprovalRejected.error_type,
                message=str(ApprovalRejected(step_name, reason)),
                retryable=False,
            )
        try:
            await self._store.resolve_approval(
                execution_id, step_name, decision, error=error
            )
        except ExecutionNotFound:
            return SignalResult.NOT_FOUND
        except NotAwaitingApproval:
            logger.info(
                f"Ignoring {decision.value} signal for step '{step_name}' "
                f"execution_id={execution_id}: not awaiting approval"
            )
            return SignalResult.NOT_AWAITING_APPROVAL

        event = ev.STEP_APPROVED if decision == ApprovalDecision.APPROVED else ev.STEP_REJECTED
        logger.info(f"Step '{step_name}' {decision.value} for execution_id={execution_id}")
        await self._emitter.emit(event, execution_id, step_name)
        return SignalResult.ACCEPTED

    def overdue(self, execution: Execution, graph: Graph) -> List[str]:
        """Names of gates in ``execution`` whose approval timeout has passed."""
        now = self._clock()
        overdue = []
        for run in execution.steps_with_status(StepStatus.AWAITING_APPROVAL):
            deadline = self._deadline(graph, run.step_name, run.awaiting_since)
            if deadline is not None and deadline <= now:
                overdue.append(run.step_name)
        return overdue

    def next_deadline(self, execution: Execution, graph: Graph) -> Optional[datetime]:
        deadlines = [
            d
            for d in (
                self._deadline(graph, run.step_name, run.awaiting_since)
                for run in execution.steps_with_status(StepStatus.AWAITING_APPROVAL)
            )
            if d is not None
        ]
        return min(deadlines) if deadlines else None

    async def expire_overdue(self, execution: Execution, graph: Graph) -> List[str]:
        """Reject every overdue gate with an ``approval_timeout`` error."""
        expired: List[str] = []
        for step_name in self.overdue(execution, graph):
            error = StepError(
                error_type=ERROR_APPROVAL_TIMEOUT,
                message=str(ApprovalRejected(step_name, "timed out")),
                retryable=False,
            )
            try:
                await self._store.resolve_approval(
                    execution.id, step_name, ApprovalDecision.REJECTED, error=error
                )
            except NotAwaitingApproval:
                # resolved concurrently by a signal
                continue
            logger.info(
                f"Approval for step '{step_name}' timed out for execution_id={execution.id}"
            )
            await self._emitter.emit(
                ev.STEP_REJECTED, execution.id, step_name, reason="timeout"
            )
            expired.append(step_name)
        return expired

    @staticmethod
    def _deadline(
        graph: Graph, step_name: str, since: Optional[datetime]
    ) -> Optional[datetime]:
        step = graph.definition.get_step(step_name)
        if step is None or step.approval_timeout is None or since is None:
            return None
        return since + timedelta(seconds=step.approval_timeout)


__all__ = ["ApprovalGate", "SignalResult"]
