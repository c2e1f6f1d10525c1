"""Step execution for sagaflow workflows."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel
from pydantic_core import PydanticSerializationError, to_jsonable_python

from . import events as ev
from .constants import (
    ERROR_INTERRUPTED,
    ERROR_INVALID_RESULT,
    ERROR_TIMEOUT,
    SKIP_CONDITION_NOT_MET,
    SKIP_ON_ERROR,
)
from .contracts import (
    ApprovalDecision,
    AwaitingApproval,
    Failure,
    OnError,
    Skipped,
    StepDefinition,
    StepError,
    StepOutcome,
    Success,
    utcnow,
)
from .errors import InvalidTransition, StepFailed
from .events import EventEmitter
from .graph import Graph
from .persistence import ExecutionStore, StepRun
from .utils.calls import call_handler
from .utils.retry import RetryEvaluator

logger = logging.getLogger(__name__)


class StepRunner:
    """Runs one claimed step and records exactly one result for the attempt."""

    def __init__(
        self,
        store: ExecutionStore,
        evaluator: RetryEvaluator,
        emitter: Optional[EventEmitter] = None,
        default_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._evaluator = evaluator
        self._emitter = emitter or EventEmitter()
        self._default_timeout = default_timeout
        self._clock = clock

    def timeout_for(self, graph: Graph, step: StepDefinition) -> Optional[float]:
        return step.timeout or graph.definition.step_timeout or self._default_timeout

    async def run(
        self,
        execution_id: str,
        graph: Graph,
        step_run: StepRun,
        context: Dict[str, Any],
    ) -> Optional[StepRun]:
        """Execute a step the caller has already claimed.

        Returns the recorded StepRun, or ``None`` when the store refused the
        result because the attempt was superseded.
        """
        step = graph.step(step_run.step_name)
        first_attempt = step_run.attempt_count == 0 and step_run.approval is None
        if first_attempt and not await self.condition_holds(execution_id, step, context):
            outcome: StepOutcome = Skipped(reason=SKIP_CONDITION_NOT_MET)
        elif step.await_approval and step_run.approval != ApprovalDecision.APPROVED:
            outcome = AwaitingApproval()
        else:
            outcome = await self.invoke(step, context, self.timeout_for(graph, step))
            if isinstance(outcome, Failure):
                outcome = self._settle_failure(
                    graph, step, step_run.attempt_count + 1, outcome
                )
        return await self._record(execution_id, step.name, outcome)

    async def condition_holds(
        self, execution_id: str, step: StepDefinition, context: Dict[str, Any]
    ) -> bool:
        """Evaluate ``step.when``; a condition that raises counts as false."""
        if step.when is None:
            return True
        try:
            return bool(await call_handler(step.when, dict(context), self._default_timeout))
        except Exception as exc:
            logger.warning(
                f"Condition for step '{step.name}' raised for execution_id={execution_id}, "
                f"skipping: {exc!r}"
            )
            return False

    async def invoke(
        self,
        step: StepDefinition,
        context: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        """Call the handler and convert whatever happens into an outcome."""
        try:
            result = await call_handler(step.handler, dict(context), timeout)
        except asyncio.TimeoutError:
            return Failure(
                error=StepError(
                    error_type=ERROR_TIMEOUT,
                    message=f"Step '{step.name}' exceeded {timeout}s",
                )
            )
        except StepFailed as exc:
            return Failure(
                error=StepError(
                    error_type=exc.error_type,
                    message=exc.message,
                    retryable=exc.retryable,
                    details=_jsonable_details(exc.details),
                )
            )
        except Exception as exc:
            logger.debug(f"Handler for step '{step.name}' raised", exc_info=True)
            return Failure(error=StepError.from_exception(exc))
        return self._to_outcome(step, result)

    def _to_outcome(self, step: StepDefinition, result: Any) -> StepOutcome:
        if isinstance(result, Failure):
            details = _jsonable_details(result.error.details)
            return result.model_copy(
                update={"error": result.error.model_copy(update={"details": details})}
            )
        if result is None:
            payload: Any = {}
        elif isinstance(result, Success):
            payload = result.payload
        elif isinstance(result, BaseModel):
            payload = result.model_dump()
        elif isinstance(result, Mapping):
            payload = dict(result)
        else:
            return _invalid_result(
                f"Step '{step.name}' returned unsupported {type(result).__name__}"
            )
        # payloads are merged into the persisted context, so they must be JSON
        try:
            payload = to_jsonable_python(payload)
        except PydanticSerializationError as exc:
            return _invalid_result(
                f"Step '{step.name}' returned a payload that is not JSON serializable: {exc}"
            )
        return Success(payload=payload)

    def _with_retry(
        self, graph: Graph, step: StepDefinition, attempt: int, outcome: Failure
    ) -> Failure:
        policy = self._evaluator.policy_for(step, graph.definition)
        retry_at = self._evaluator.retry_at(policy, attempt, outcome.error, self._clock())
        return outcome.model_copy(update={"retry_at": retry_at})

    def _settle_failure(
        self, graph: Graph, step: StepDefinition, attempt: int, outcome: Failure
    ) -> StepOutcome:
        """Schedule a retry, or apply the step's ``on_error`` once retries are spent."""
        outcome = self._with_retry(graph, step, attempt, outcome)
        if not outcome.terminal or step.on_error == OnError.FAIL:
            return outcome
        if step.on_error == OnError.SKIP:
            return Skipped(reason=SKIP_ON_ERROR, error=outcome.error)
        return outcome.model_copy(update={"tolerated": True})

    async def record_interrupted(
        self, execution_id: str, graph: Graph, step_run: StepRun
    ) -> Optional[StepRun]:
        """Fail a running step whose worker is gone, applying retry policy."""
        step = graph.step(step_run.step_name)
        outcome = self._settle_failure(
            graph,
            step,
            step_run.attempt_count + 1,
            Failure(
                error=StepError(
                    error_type=ERROR_INTERRUPTED,
                    message=f"Step '{step.name}' was running when its worker stopped",
                )
            ),
        )
        logger.warning(
            f"Recovering interrupted step '{step.name}' for execution_id={execution_id}"
        )
        return await self._record(execution_id, step.name, outcome)

    async def _record(
        self, execution_id: str, step_name: str, outcome: StepOutcome
    ) -> Optional[StepRun]:
        try:
            recorded = await self._store.record_step_result(execution_id, step_name, outcome)
        except InvalidTransition as exc:
            logger.warning(
                f"Discarding late result for step '{step_name}' "
                f"execution_id={execution_id}: {exc}"
            )
            return None

        if isinstance(outcome, Success):
            logger.info(f"Step '{step_name}' succeeded for execution_id={execution_id}")
            await self._emitter.emit(
                ev.STEP_SUCCEEDED, execution_id, step_name, attempt=recorded.attempt_count
            )
        elif isinstance(outcome, Failure):
            logger.info(
                f"Step '{step_name}' failed for execution_id={execution_id}: "
                f"{outcome.error.error_type} {outcome.error.message}"
            )
            await self._emitter.emit(
                ev.STEP_FAILED,
                execution_id,
                step_name,
                attempt=recorded.attempt_count,
                error_type=outcome.error.error_type,
                terminal=outcome.terminal,
                tolerated=outcome.tolerated,
            )
            if not outcome.terminal:
                await self._emitter.emit(
                    ev.STEP_RETRIED,
                    execution_id,
                    step_name,
                    next_attempt_at=outcome.retry_at.isoformat(),
                )
        elif isinstance(outcome, Skipped):
            logger.info(
                f"Step '{step_name}' skipped ({outcome.reason}) for execution_id={execution_id}"
            )
            data: Dict[str, Any] = {"reason": outcome.reason}
            if outcome.error is not None:
                data["error_type"] = outcome.error.error_type
            await self._emitter.emit(ev.STEP_SKIPPED, execution_id, step_name, **data)
        else:
            logger.info(
                f"Step '{step_name}' awaiting approval for execution_id={execution_id}"
            )
            await self._emitter.emit(ev.STEP_AWAITING_APPROVAL, execution_id, step_name)
        return recorded


def _jsonable_details(details: Dict[str, Any]) -> Dict[str, Any]:
    return to_jsonable_python(details, fallback=str)


def _invalid_result(message: str) -> Failure:
    return Failure(
        error=StepError(error_type=ERROR_INVALID_RESULT, message=message, retryable=False)
    )
