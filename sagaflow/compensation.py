"""Reverse-order rollback of succeeded steps."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from . import events as ev
from .constants import ERROR_TIMEOUT
from .contracts import StepError, StepStatus
from .errors import CompensationError
from .events import EventEmitter
from .graph import Graph
from .persistence import Execution, ExecutionStore
from .utils.calls import call_handler

logger = logging.getLogger(__name__)


@dataclass
class CompensationReport:
    invoked: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed


class CompensationEngine:
    """Undo the effects of succeeded steps after a terminal failure.

    Rollbacks run one at a time in reverse topological order. A failing
    rollback is recorded on the StepRun and on the execution and the engine
    moves on to the next step; it never raises for a handler failure.
    """

    def __init__(
        self,
        store: ExecutionStore,
        emitter: Optional[EventEmitter] = None,
        rollback_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._emitter = emitter or EventEmitter()
        self._rollback_timeout = rollback_timeout

    @staticmethod
    def plan(execution: Execution, graph: Graph) -> List[str]:
        """Succeeded, not yet rolled back steps in the order they must be undone."""
        succeeded = {
            run.step_name
            for run in execution.steps
            if run.status == StepStatus.SUCCEEDED
        }
        return [name for name in reversed(graph.order) if name in succeeded]

    async def compensate(self, execution: Execution, graph: Graph) -> CompensationReport:
        report = CompensationReport()
        for step_name in self.plan(execution, graph):
            step = graph.step(step_name)
            if step.rollback is None:
                await self._store.mark_rolled_back(execution.id, step_name)
                report.skipped.append(step_name)
                continue

            # re-read so each rollback sees the context as last persisted
            current = await self._store.get_execution(execution.id)
            context = dict((current or execution).context)
            error = await self._invoke(step.rollback, step_name, context)
            report.invoked.append(step_name)
            if error is None:
                await self._store.mark_rolled_back(execution.id, step_name)
                logger.info(f"Rolled back step '{step_name}' for execution_id={execution.id}")
                await self._emitter.emit(ev.STEP_ROLLED_BACK, execution.id, step_name)
            else:
                failure = CompensationError(step_name, error.message)
                logger.error(f"{failure} (execution_id={execution.id})")
                await self._store.mark_rolled_back(execution.id, step_name, error)
                await self._store.record_compensation_error(
                    execution.id,
                    error.model_copy(
                        update={"details": {**error.details, "step_name": step_name}}
                    ),
                )
                await self._emitter.emit(
                    ev.STEP_ROLLED_BACK,
                    execution.id,
                    step_name,
                    error_type=error.error_type,
                )
                report.failed.append(step_name)
        return report

    async def _invoke(self, rollback, step_name: str, context: dict) -> Optional[StepError]:
        try:
            await call_handler(rollback, context, self._rollback_timeout)
        except asyncio.TimeoutError:
            return StepError(
                error_type=ERROR_TIMEOUT,
                message=f"Rollback of '{step_name}' exceeded {self._rollback_timeout}s",
                retryable=False,
            )
        except Exception as exc:
            return StepError.from_exception(exc, retryable=False)
        return None
