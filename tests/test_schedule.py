"""Schedule and trigger dispatcher tests."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from sagaflow import WorkflowEngine
from sagaflow.config import SchedulerSettings
from sagaflow.contracts import CatchUpPolicy, TriggerKind, WorkflowDefinition
from sagaflow.dispatch import TriggerDispatcher
from sagaflow.persistence import InMemoryExecutionStore
from sagaflow.schedule import (
    ScheduleRegistration,
    next_fire_time,
    plan_catch_up,
    recent_fire_times,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingLauncher:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, definition_id, initial_context, trigger):
        self.calls.append((definition_id, initial_context, trigger))
        return f"exec-{len(self.calls)}"


def _minutes(*values):
    return [T0 + timedelta(minutes=m) for m in values]


def test_fire_times():
    assert next_fire_time("*/15 * * * *", T0) == T0 + timedelta(minutes=15)
    ticks = recent_fire_times("*/15 * * * *", T0, T0 + timedelta(hours=1))
    assert ticks == _minutes(15, 30, 45, 60)
    assert recent_fire_times("*/15 * * * *", T0, T0 + timedelta(hours=1), limit=2) == _minutes(
        45, 60
    )
    assert recent_fire_times("*/15 * * * *", T0, T0 + timedelta(minutes=10)) == []


def test_recent_fire_times_never_include_a_tick_after_until():
    # six fields: the last one is seconds
    until = T0 + timedelta(seconds=19, milliseconds=500)
    assert recent_fire_times("* * * * * */10", T0, until) == [T0 + timedelta(seconds=10)]
    assert recent_fire_times("* * * * * */10", T0, T0 + timedelta(seconds=20)) == [
        T0 + timedelta(seconds=10),
        T0 + timedelta(seconds=20),
    ]


def test_catch_up_policies():
    due = _minutes(15, 30, 45, 60)
    now = T0 + timedelta(minutes=61)
    assert plan_catch_up(due, CatchUpPolicy.SKIP, now) == []
    assert plan_catch_up(due, CatchUpPolicy.RUN_ONCE, now) == _minutes(60)
    assert plan_catch_up(due, CatchUpPolicy.REPLAY, now) == due
    assert plan_catch_up(due, CatchUpPolicy.REPLAY, now, max_fires=3) == _minutes(30, 45, 60)
    assert plan_catch_up(due, CatchUpPolicy.REPLAY, now, window=20 * 60) == _minutes(45, 60)
    assert plan_catch_up([], CatchUpPolicy.RUN_ONCE, now) == []


def test_invalid_cron_is_rejected():
    with pytest.raises(ValidationError):
        ScheduleRegistration(schedule_id="s", definition_id="d@1", cron="every tuesday")


@pytest.mark.asyncio
async def test_manual_start_uses_manual_trigger():
    launcher = RecordingLauncher()
    dispatcher = TriggerDispatcher(launcher, InMemoryExecutionStore())
    execution_id = await dispatcher.start_execution("order@1", {"id": 1})
    assert execution_id == "exec-1"
    definition_id, context, trigger = launcher.calls[0]
    assert (definition_id, context) == ("order@1", {"id": 1})
    assert trigger.kind == TriggerKind.MANUAL


@pytest.mark.asyncio
async def test_first_reconcile_records_baseline_without_firing():
    clock = Clock()
    store = InMemoryExecutionStore(clock=clock)
    launcher = RecordingLauncher()
    dispatcher = TriggerDispatcher(launcher, store, clock=clock)
    dispatcher.register_schedule("report@1", "*/5 * * * *", CatchUpPolicy.REPLAY)

    assert await dispatcher.reconcile() == []
    assert await store.get_schedule_state("report@1") == T0
    assert launcher.calls == []


@pytest.mark.asyncio
async def test_reconcile_applies_policy_per_schedule():
    clock = Clock(T0 + timedelta(minutes=30))
    store = InMemoryExecutionStore(clock=clock)
    launcher = RecordingLauncher()
    dispatcher = TriggerDispatcher(
        launcher, store, SchedulerSettings(max_catch_up_fires=4), clock=clock
    )
    dispatcher.register_schedule("skip@1", "*/5 * * * *", CatchUpPolicy.SKIP)
    dispatcher.register_schedule("once@1", "*/5 * * * *", CatchUpPolicy.RUN_ONCE)
    dispatcher.register_schedule("all@1", "*/5 * * * *", CatchUpPolicy.REPLAY)
    for schedule in dispatcher.schedules:
        await store.save_schedule_state(schedule.schedule_id, T0)

    launched = await dispatcher.reconcile()

    fired = [(d, t.scheduled_at) for d, _, t in launcher.calls]
    assert ("once@1", T0 + timedelta(minutes=30)) in fired
    assert [t for d, t in fired if d == "all@1"] == _minutes(15, 20, 25, 30)
    assert not [d for d, _ in fired if d == "skip@1"]
    assert len(launched) == 5
    for schedule in dispatcher.schedules:
        assert await store.get_schedule_state(schedule.schedule_id) == T0 + timedelta(
            minutes=30
        )


@pytest.mark.asyncio
async def test_tick_fires_due_ticks_once():
    clock = Clock()
    store = InMemoryExecutionStore(clock=clock)
    launcher = RecordingLauncher()
    dispatcher = TriggerDispatcher(launcher, store, clock=clock)
    dispatcher.register_schedule(
        "report@1", "*/5 * * * *", schedule_id="reports", initial_context={"format": "pdf"}
    )
    await store.save_schedule_state("reports", T0)

    clock.now = T0 + timedelta(minutes=4)
    assert await dispatcher.tick() == []

    clock.now = T0 + timedelta(minutes=11)
    assert len(await dispatcher.tick()) == 2
    assert await dispatcher.tick() == []

    triggers = [t for _, _, t in launcher.calls]
    assert [t.scheduled_at for t in triggers] == _minutes(5, 10)
    assert all(t.schedule_id == "reports" for t in triggers)
    assert launcher.calls[0][1] == {"format": "pdf"}


@pytest.mark.asyncio
async def test_failed_launch_does_not_block_other_ticks():
    clock = Clock(T0 + timedelta(minutes=10))
    store = InMemoryExecutionStore(clock=clock)
    calls = []

    async def flaky_launcher(definition_id, initial_context, trigger):
        calls.append(trigger.scheduled_at)
        if len(calls) == 1:
            raise RuntimeError("store unavailable")
        return "exec"

    dispatcher = TriggerDispatcher(flaky_launcher, store, clock=clock)
    dispatcher.register_schedule("report@1", "*/5 * * * *")
    await store.save_schedule_state("report@1", T0)

    assert await dispatcher.tick() == ["exec"]
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_engine_catch_up_run_once_starts_one_scheduled_execution():
    clock = Clock(T0 + timedelta(hours=1, minutes=2))
    store = InMemoryExecutionStore(clock=clock)
    engine = WorkflowEngine(store=store, clock=clock)
    engine.register(
        WorkflowDefinition(
            name="nightly",
            schedule="*/15 * * * *",
            catch_up=CatchUpPolicy.RUN_ONCE,
        ).with_step("report", lambda ctx: {"reported": True})
    )
    await store.save_schedule_state("nightly@1", T0)

    launched = await engine.dispatcher.reconcile()
    assert len(launched) == 1
    execution = await engine.wait_for(launched[0])

    assert execution.trigger.kind == TriggerKind.SCHEDULED
    assert execution.trigger.scheduled_at == T0 + timedelta(hours=1)
    assert execution.context == {"reported": True}
    assert len(await engine.list_executions()) == 1
