"""Lifecycle notifications published over a transport."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_EVENT_HISTORY, LIFECYCLE_TOPIC
from .contracts import utcnow

logger = logging.getLogger(__name__)

EXECUTION_STARTED = "execution.started"
EXECUTION_COMPLETED = "execution.completed"
EXECUTION_FAILED = "execution.failed"
EXECUTION_COMPENSATING = "execution.compensating"
EXECUTION_COMPENSATED = "execution.compensated"
EXECUTION_CANCELLED = "execution.cancelled"
EXECUTION_PAUSED = "execution.paused"
EXECUTION_RESUMED = "execution.resumed"
STEP_STARTED = "step.started"
STEP_SUCCEEDED = "step.succeeded"
STEP_FAILED = "step.failed"
STEP_SKIPPED = "step.skipped"
STEP_AWAITING_APPROVAL = "step.awaiting_approval"
STEP_RETRIED = "step.retried"
STEP_APPROVED = "step.approved"
STEP_REJECTED = "step.rejected"
STEP_ROLLED_BACK = "step.rolled_back"


class LifecycleEvent(BaseModel):
    """A single lifecycle notification."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    execution_id: str
    step_name: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "LifecycleEvent":
        return cls.model_validate_json(data)


class EventEmitter:
    """Publish lifecycle events; never lets a publish failure reach the caller.

    The newest ``history_limit`` events are also kept in :attr:`history` for
    in-process inspection; ``0`` keeps none.
    """

    def __init__(
        self,
        transport=None,
        topic: str = LIFECYCLE_TOPIC,
        history_limit: int = DEFAULT_EVENT_HISTORY,
    ) -> None:
        self._transport = transport
        self._topic = topic
        self.history: Deque[LifecycleEvent] = deque(maxlen=history_limit)

    async def emit(
        self,
        event_type: str,
        execution_id: str,
        step_name: Optional[str] = None,
        **data: Any,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            type=event_type, execution_id=execution_id, step_name=step_name, data=data
        )
        self.history.append(event)
        if self._transport is None:
            return event
        try:
            await self._transport.publish(self._topic, event)
        except Exception as exc:
            logger.warning(
                f"Failed to publish {event_type} for execution_id={execution_id}: {exc}"
            )
        return event

    def of_type(self, event_type: str) -> List[LifecycleEvent]:
        return [e for e in self.history if e.type == event_type]
