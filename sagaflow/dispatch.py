"""Trigger dispatcher: manual starts and cron schedules."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import SchedulerSettings
from .contracts import CatchUpPolicy, TriggerKind, utcnow
from .persistence import ExecutionStore, TriggerInfo
from .schedule import ScheduleRegistration, plan_catch_up, recent_fire_times

logger = logging.getLogger(__name__)

Launcher = Callable[[str, Dict[str, Any], TriggerInfo], Awaitable[str]]


class TriggerDispatcher:
    """Service responsible for turning triggers into new executions.

    The schedule table belongs to the instance. Each fire calls ``launcher``
    which creates an independent execution; fires are never serialized
    behind one another.
    """

    def __init__(
        self,
        launcher: Launcher,
        store: ExecutionStore,
        settings: Optional[SchedulerSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._launcher = launcher
        self._store = store
        self._settings = settings or SchedulerSettings()
        self._clock = clock
        self._schedules: Dict[str, ScheduleRegistration] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def schedules(self) -> List[ScheduleRegistration]:
        return list(self._schedules.values())

    async def start_execution(
        self, definition_id: str, initial_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """Launch a manual execution and return its id."""
        return await self._launcher(
            definition_id, dict(initial_context or {}), TriggerInfo(kind=TriggerKind.MANUAL)
        )

    def register_schedule(
        self,
        definition_id: str,
        cron: str,
        catch_up_policy: Optional[CatchUpPolicy] = None,
        catch_up_window: Optional[float] = None,
        *,
        schedule_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> ScheduleRegistration:
        registration = ScheduleRegistration(
            schedule_id=schedule_id or definition_id,
            definition_id=definition_id,
            cron=cron,
            catch_up_policy=catch_up_policy or self._settings.default_catch_up_policy,
            catch_up_window=(
                catch_up_window
                if catch_up_window is not None
                else self._settings.catch_up_window
            ),
            initial_context=initial_context or {},
        )
        self._schedules[registration.schedule_id] = registration
        logger.info(
            f"Registered schedule {registration.schedule_id} ({cron}) "
            f"for {definition_id}"
        )
        return registration

    def unregister_schedule(self, schedule_id: str) -> bool:
        return self._schedules.pop(schedule_id, None) is not None

    # ------------------------------------------------------------------
    async def reconcile(self) -> List[str]:
        """Apply each schedule's catch-up policy to ticks missed while down."""
        now = self._clock()
        launched: List[str] = []
        for registration in list(self._schedules.values()):
            last = await self._store.get_schedule_state(registration.schedule_id)
            if last is None:
                logger.info(
                    f"Schedule {registration.schedule_id} seen for the first time, "
                    f"baseline {now.isoformat()}"
                )
                await self._store.save_schedule_state(registration.schedule_id, now)
                continue
            due = recent_fire_times(
                registration.cron, last, now, self._settings.max_catch_up_fires
            )
            if not due:
                continue
            fires = plan_catch_up(
                due,
                registration.catch_up_policy,
                now,
                window=registration.catch_up_window,
                max_fires=self._settings.max_catch_up_fires,
            )
            logger.info(
                f"Schedule {registration.schedule_id} missed {len(due)} tick(s), "
                f"policy {registration.catch_up_policy.value} fires {len(fires)}"
            )
            await self._store.save_schedule_state(registration.schedule_id, due[-1])
            launched.extend(await self._fire(registration, fires))
        return launched

    async def tick(self) -> List[str]:
        """Fire every schedule tick that became due since the last check."""
        now = self._clock()
        launched: List[str] = []
        for registration in list(self._schedules.values()):
            last = await self._store.get_schedule_state(registration.schedule_id)
            if last is None:
                await self._store.save_schedule_state(registration.schedule_id, now)
                continue
            due = recent_fire_times(
                registration.cron, last, now, self._settings.max_catch_up_fires
            )
            if not due:
                continue
            # advance first: a crash after this point loses the fire rather than doubling it
            await self._store.save_schedule_state(registration.schedule_id, due[-1])
            launched.extend(await self._fire(registration, due))
        return launched

    async def _fire(
        self, registration: ScheduleRegistration, ticks: List[datetime]
    ) -> List[str]:
        if not ticks:
            return []
        launches = [
            self._launcher(
                registration.definition_id,
                dict(registration.initial_context),
                TriggerInfo(
                    kind=TriggerKind.SCHEDULED,
                    scheduled_at=tick,
                    schedule_id=registration.schedule_id,
                ),
            )
            for tick in ticks
        ]
        results = await asyncio.gather(*launches, return_exceptions=True)
        launched: List[str] = []
        for tick, result in zip(ticks, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Failed to launch {registration.definition_id} for tick "
                    f"{tick.isoformat()}: {result}"
                )
                continue
            logger.info(
                f"Launched {registration.definition_id} for tick {tick.isoformat()} "
                f"execution_id={result}"
            )
            launched.append(result)
        return launched

    # ------------------------------------------------------------------
    async def run(self, lifespan: Optional[float] = None) -> None:
        """Reconcile, then tick every ``tick_interval`` until stopped."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        await self.reconcile()
        while not self._stopping.is_set():
            await self.tick()
            timeout = self._settings.tick_interval
            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                timeout = min(timeout, remaining)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout)
            except asyncio.TimeoutError:
                pass

    def start(self, lifespan: Optional[float] = None) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self.run(lifespan))
        return self._task

    async def join(self) -> None:
        """Wait for the loop started by :meth:`start` to end on its own."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
