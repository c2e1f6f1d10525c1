"""End-to-end order saga: reserve inventory, charge payment, ship."""

import asyncio
from collections import Counter

import pytest

from sagaflow import WorkflowEngine
from sagaflow.config import EngineSettings, SagaflowConfig
from sagaflow.contracts import (
    ExecutionStatus,
    RetryPolicy,
    StepStatus,
    WorkflowDefinition,
)
from sagaflow.errors import StepFailed
from sagaflow.persistence import InMemoryExecutionStore


class Shop:
    """Side-effect recorder standing in for inventory and payment services."""

    def __init__(self, charge_failures: int = 0) -> None:
        self.charge_failures = charge_failures
        self.calls = Counter()

    def reserve(self, ctx):
        self.calls["reserve"] += 1
        return {"reservation": f"r-{ctx['order_id']}"}

    async def charge(self, ctx):
        self.calls["charge"] += 1
        if self.calls["charge"] <= self.charge_failures:
            raise ConnectionError("payment gateway unreachable")
        return {"payment": "p-1"}

    def release(self, ctx):
        self.calls["release"] += 1

    def refund(self, ctx):
        self.calls["refund"] += 1

    def definition(self, max_attempts: int = 3) -> WorkflowDefinition:
        return (
            WorkflowDefinition(
                name="order",
                retry=RetryPolicy(max_attempts=max_attempts, initial_delay=0.01),
            )
            .with_step("reserve", self.reserve, rollback=self.release)
            .with_step("charge", self.charge, after="reserve", rollback=self.refund)
        )


@pytest.mark.asyncio
async def test_transient_failure_is_retried_to_completion():
    shop = Shop(charge_failures=1)
    engine = WorkflowEngine(store=InMemoryExecutionStore())
    engine.register(shop.definition())

    execution_id = await engine.start_execution("order@1", {"order_id": 42}, wait=True)
    execution = await engine.get_execution(execution_id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.step_run("reserve").attempt_count == 1
    assert execution.step_run("charge").attempt_count == 2
    assert execution.context == {"order_id": 42, "reservation": "r-42", "payment": "p-1"}
    assert shop.calls["release"] == 0
    assert shop.calls["refund"] == 0
    assert len(engine.events.of_type("step.retried")) == 1
    assert [e.type for e in engine.events.history if e.type.startswith("execution.")] == [
        "execution.started",
        "execution.completed",
    ]


@pytest.mark.asyncio
async def test_exhausted_retries_compensate_completed_steps():
    shop = Shop(charge_failures=10)
    engine = WorkflowEngine(store=InMemoryExecutionStore())
    engine.register(shop.definition(max_attempts=3))

    execution_id = await engine.start_execution("order@1", {"order_id": 7}, wait=True)
    execution = await engine.get_execution(execution_id)

    assert execution.status == ExecutionStatus.COMPENSATED
    assert execution.error.error_type == "ConnectionError"
    assert execution.step_run("charge").attempt_count == 3
    assert execution.step_run("charge").status == StepStatus.FAILED
    assert execution.step_run("reserve").status == StepStatus.ROLLED_BACK
    assert shop.calls["charge"] == 3
    assert shop.calls["release"] == 1
    assert shop.calls["refund"] == 0


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    def decline(ctx):
        raise StepFailed("card declined", error_type="declined", retryable=False)

    definition = (
        WorkflowDefinition(name="strict", retry=RetryPolicy(max_attempts=5, initial_delay=0.01))
        .with_step("charge", decline)
    )
    engine = WorkflowEngine(store=InMemoryExecutionStore())
    engine.register(definition)

    execution = await engine.wait_for(await engine.start_execution("strict", {}))

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.error_type == "declined"
    assert execution.step_run("charge").attempt_count == 1


@pytest.mark.asyncio
async def test_cancellation_lets_running_step_finish_then_compensates():
    started = asyncio.Event()
    release = asyncio.Event()
    undone = []

    async def pack(ctx):
        started.set()
        await release.wait()
        return {"packed": True}

    definition = (
        WorkflowDefinition(name="fulfil")
        .with_step("hold", lambda ctx: {"held": True}, rollback=lambda ctx: undone.append("hold"))
        .with_step("pack", pack, after="hold", rollback=lambda ctx: undone.append("pack"))
        .with_step("ship", lambda ctx: {"shipped": True}, after="pack")
    )
    engine = WorkflowEngine(store=InMemoryExecutionStore())
    engine.register(definition)

    execution_id = await engine.start_execution("fulfil", {})
    await asyncio.wait_for(started.wait(), 5)
    assert await engine.cancel(execution_id) is True
    release.set()
    execution = await engine.wait_for(execution_id, timeout=5)

    assert execution.status == ExecutionStatus.COMPENSATED
    assert execution.error.error_type == "cancelled"
    assert execution.step_run("ship") is None
    assert undone == ["pack", "hold"]
    assert engine.events.of_type("execution.cancelled")
    assert await engine.cancel(execution_id) is False


@pytest.mark.asyncio
async def test_execution_timeout_stops_new_steps():
    async def slow(ctx):
        await asyncio.sleep(0.3)
        return {"slow": True}

    definition = (
        WorkflowDefinition(name="deadline", execution_timeout=0.1)
        .with_step("slow", slow)
        .with_step("after_slow", lambda ctx: {}, after="slow")
    )
    engine = WorkflowEngine(store=InMemoryExecutionStore())
    engine.register(definition)

    execution_id = await engine.start_execution("deadline", {}, wait=True)
    execution = await engine.get_execution(execution_id)

    assert execution.status == ExecutionStatus.COMPENSATED
    assert execution.error.error_type == "execution_timeout"
    assert execution.step_run("after_slow") is None


@pytest.mark.asyncio
async def test_concurrency_cap_limits_parallel_steps():
    active = 0
    peak = 0

    async def work(ctx):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return {}

    definition = WorkflowDefinition(name="fanout")
    for name in ("a", "b", "c"):
        definition = definition.with_step(name, work)
    config = SagaflowConfig(engine=EngineSettings(max_concurrent_steps=1))
    engine = WorkflowEngine(store=InMemoryExecutionStore(), config=config)
    engine.register(definition)

    execution_id = await engine.start_execution("fanout", {}, wait=True)

    assert (await engine.get_execution(execution_id)).status == ExecutionStatus.COMPLETED
    assert peak == 1
