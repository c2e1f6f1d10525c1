from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Optional

from ..contracts import RetryPolicy, StepDefinition, StepError, WorkflowDefinition, utcnow


def compute_backoff(
    policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None
) -> float:
    """Compute the exponential backoff delay after ``attempt`` failed attempts.

    ``attempt`` is 1-based: the delay after the first failure is
    ``initial_delay``. With jitter the delay moves by up to its own size in
    either direction, clamped to ``[0, max_delay]``.
    """
    delay = min(policy.max_delay, policy.initial_delay * policy.multiplier ** (attempt - 1))
    if policy.jitter:
        rng = rng or random
        delay = delay + rng.uniform(-delay, delay)
    return max(0.0, min(policy.max_delay, delay))


class RetryEvaluator:
    """Decide whether and when a failed step is attempted again."""

    def __init__(
        self,
        default_policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.default_policy = default_policy or RetryPolicy()
        self.rng = rng or random.Random()

    def policy_for(
        self, step: StepDefinition, definition: Optional[WorkflowDefinition] = None
    ) -> RetryPolicy:
        if step.retry is not None:
            return step.retry
        if definition is not None and definition.retry is not None:
            return definition.retry
        return self.default_policy

    def evaluate(self, policy: RetryPolicy, attempt: int, error: StepError) -> Optional[float]:
        """Return the delay before the next attempt, or ``None`` when exhausted."""
        if not policy.allows(attempt) or not policy.retries_error(error):
            return None
        return compute_backoff(policy, attempt, self.rng)

    def retry_at(
        self,
        policy: RetryPolicy,
        attempt: int,
        error: StepError,
        now: Optional[datetime] = None,
    ) -> Optional[datetime]:
        delay = self.evaluate(policy, attempt, error)
        if delay is None:
            return None
        return (now or utcnow()) + timedelta(seconds=delay)
