"""Cron schedules and catch-up planning."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .contracts import CatchUpPolicy


class ScheduleRegistration(BaseModel):
    """A definition launched on a cron schedule."""

    model_config = ConfigDict(frozen=True)

    schedule_id: str
    definition_id: str
    cron: str
    catch_up_policy: CatchUpPolicy = CatchUpPolicy.SKIP
    catch_up_window: Optional[float] = Field(default=None, gt=0)
    initial_context: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("cron")
    @classmethod
    def _valid_cron(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v


def next_fire_time(cron: str, after: datetime) -> datetime:
    """First tick strictly after ``after``."""
    return croniter(cron, after).get_next(datetime)


def recent_fire_times(
    cron: str,
    after: datetime,
    until: datetime,
    limit: Optional[int] = None,
) -> List[datetime]:
    """Ticks in ``(after, until]``, oldest first, keeping at most the newest ``limit``.

    Walks backwards from ``until`` so a long outage on a frequent schedule
    costs at most ``limit`` iterations.
    """
    # croniter.get_prev is strictly before its start and works in whole seconds,
    # so start past ``until`` and drop any tick that lands after it
    itr = croniter(cron, until + timedelta(seconds=1))
    ticks: List[datetime] = []
    while limit is None or len(ticks) < limit:
        tick = itr.get_prev(datetime)
        if tick > until:
            continue
        if tick <= after:
            break
        ticks.append(tick)
    ticks.reverse()
    return ticks


def plan_catch_up(
    due: List[datetime],
    policy: CatchUpPolicy,
    now: datetime,
    window: Optional[float] = None,
    max_fires: Optional[int] = None,
) -> List[datetime]:
    """Select which missed ticks to fire after downtime."""
    if window is not None:
        horizon = now - timedelta(seconds=window)
        due = [t for t in due if t >= horizon]
    if not due or policy == CatchUpPolicy.SKIP:
        return []
    if policy == CatchUpPolicy.RUN_ONCE:
        return due[-1:]
    if max_fires is not None:
        return due[-max_fires:]
    return list(due)
