"""Step runner tests."""

import asyncio
import functools

import pytest
from pydantic import BaseModel

from sagaflow import WorkflowEngine
from sagaflow.contracts import (
    ExecutionStatus,
    Failure,
    OnError,
    RetryPolicy,
    StepDefinition,
    StepStatus,
    Success,
    WorkflowDefinition,
    fail,
)
from sagaflow.errors import StepFailed
from sagaflow.events import EventEmitter
from sagaflow.execute import StepRunner
from sagaflow.graph import compile_definition
from sagaflow.persistence import InMemoryExecutionStore, SQLiteExecutionStore
from sagaflow.utils.retry import RetryEvaluator


class Receipt(BaseModel):
    receipt_id: str


class Token:
    """Not JSON serializable."""


class AsyncCallable:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, ctx):
        self.calls += 1
        await asyncio.sleep(0)
        return {"called": self.calls}


def _runner(store=None, emitter=None):
    return StepRunner(store or InMemoryExecutionStore(), RetryEvaluator(), emitter)


async def _invoke(handler, timeout=None):
    step = StepDefinition(name="s", handler=handler)
    return await _runner().invoke(step, {"amount": 5}, timeout)


@pytest.mark.asyncio
async def test_sync_mapping_result_is_success():
    outcome = await _invoke(lambda ctx: {"doubled": ctx["amount"] * 2})
    assert outcome == Success(payload={"doubled": 10})


@pytest.mark.asyncio
async def test_async_model_and_none_results():
    async def returns_model(ctx):
        return Receipt(receipt_id="r-1")

    async def returns_nothing(ctx):
        return None

    assert (await _invoke(returns_model)).payload == {"receipt_id": "r-1"}
    assert (await _invoke(returns_nothing)).payload == {}


@pytest.mark.asyncio
async def test_handler_cannot_mutate_caller_context():
    context = {"amount": 5}

    def mutate(ctx):
        ctx["amount"] = 0
        return {}

    await _runner().invoke(StepDefinition(name="s", handler=mutate), context)
    assert context == {"amount": 5}


@pytest.mark.asyncio
async def test_exceptions_become_failures():
    def boom(ctx):
        raise ValueError("bad input")

    def declined(ctx):
        raise StepFailed("card declined", error_type="declined", retryable=False)

    outcome = await _invoke(boom)
    assert isinstance(outcome, Failure)
    assert outcome.error.error_type == "ValueError"
    assert outcome.error.message == "bad input"

    outcome = await _invoke(declined)
    assert outcome.error.error_type == "declined"
    assert outcome.error.retryable is False

    outcome = await _invoke(lambda ctx: fail("nope", error_type="business"))
    assert outcome.error.error_type == "business"


@pytest.mark.asyncio
async def test_timeout_and_invalid_result():
    async def slow(ctx):
        await asyncio.sleep(1)

    outcome = await _invoke(slow, timeout=0.05)
    assert outcome.error.error_type == "timeout"

    outcome = await _invoke(lambda ctx: 42)
    assert outcome.error.error_type == "invalid_result"


@pytest.mark.asyncio
async def test_run_gated_step_does_not_invoke_handler():
    calls = []
    definition = WorkflowDefinition(name="gated").with_step(
        "ship", lambda ctx: calls.append(1), await_approval=True
    )
    graph = compile_definition(definition)
    store = InMemoryExecutionStore()
    emitter = EventEmitter()
    execution = await store.create_execution(
        graph.definition_id, {}, dependencies=graph.dependencies()
    )
    claim = await store.record_step_start(execution.id, "ship")

    run = await _runner(store, emitter).run(execution.id, graph, claim.step_run, {})
    assert run.status == StepStatus.AWAITING_APPROVAL
    assert calls == []
    assert [e.type for e in emitter.history] == ["step.awaiting_approval"]


@pytest.mark.asyncio
async def test_run_failure_schedules_retry():
    def flaky(ctx):
        raise ConnectionError("down")

    definition = WorkflowDefinition(name="flaky").with_step(
        "call", flaky, retry=RetryPolicy(max_attempts=2, initial_delay=30)
    )
    graph = compile_definition(definition)
    store = InMemoryExecutionStore()
    execution = await store.create_execution(
        graph.definition_id, {}, dependencies=graph.dependencies()
    )
    runner = _runner(store)

    claim = await store.record_step_start(execution.id, "call")
    run = await runner.run(execution.id, graph, claim.step_run, {})
    assert run.status == StepStatus.FAILED
    assert run.next_attempt_at is not None
    assert await store.list_runnable_steps(execution.id) == set()


@pytest.mark.asyncio
async def test_late_result_is_discarded():
    definition = WorkflowDefinition(name="late").with_step("a", lambda ctx: {"x": 1})
    graph = compile_definition(definition)
    store = InMemoryExecutionStore()
    execution = await store.create_execution(
        graph.definition_id, {}, dependencies=graph.dependencies()
    )
    claim = await store.record_step_start(execution.id, "a")
    runner = _runner(store)

    assert await runner.run(execution.id, graph, claim.step_run, {}) is not None
    assert await runner.run(execution.id, graph, claim.step_run, {}) is None
    loaded = await store.get_execution(execution.id)
    assert loaded.step_run("a").attempt_count == 1


@pytest.mark.asyncio
async def test_partial_and_async_callable_handlers_are_awaited():
    async def add(amount, ctx):
        await asyncio.sleep(0)
        return {"total": ctx["amount"] + amount}

    assert await _invoke(functools.partial(add, 3)) == Success(payload={"total": 8})

    handler = AsyncCallable()
    assert await _invoke(handler) == Success(payload={"called": 1})
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_timeout_covers_awaitable_returned_by_partial():
    async def slow(delay, ctx):
        await asyncio.sleep(delay)
        return {}

    outcome = await _invoke(functools.partial(slow, 1), timeout=0.05)
    assert outcome.error.error_type == "timeout"


@pytest.mark.asyncio
async def test_non_json_payload_is_invalid_result():
    outcome = await _invoke(lambda ctx: {"token": Token()})
    assert isinstance(outcome, Failure)
    assert outcome.error.error_type == "invalid_result"
    assert outcome.error.retryable is False

    outcome = await _invoke(lambda ctx: fail("bad", token=Token()))
    assert outcome.error.details["token"].startswith("<")


@pytest.mark.asyncio
async def test_non_json_payload_fails_execution_on_sqlite(tmp_path):
    store = SQLiteExecutionStore(tmp_path / "flows.db")
    definition = WorkflowDefinition(
        name="tokens", retry=RetryPolicy(max_attempts=3, initial_delay=0.01)
    ).with_step("mint", lambda ctx: {"token": Token()})
    engine = WorkflowEngine(store=store)
    engine.register(definition)

    execution = await engine.wait_for(await engine.start_execution("tokens", {}), timeout=5)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error.error_type == "invalid_result"
    assert execution.step_run("mint").attempt_count == 1
    store.close()


@pytest.mark.asyncio
async def test_condition_false_or_raising_skips_step():
    calls = []

    def explode(ctx):
        raise KeyError("missing")

    definition = (
        WorkflowDefinition(name="conditional")
        .with_step("gift_wrap", lambda ctx: calls.append("wrap"), when=lambda ctx: ctx["gift"])
        .with_step("insure", lambda ctx: calls.append("insure"), when=explode)
    )
    graph = compile_definition(definition)
    store = InMemoryExecutionStore()
    emitter = EventEmitter()
    runner = _runner(store, emitter)
    execution = await store.create_execution(
        graph.definition_id, {"gift": False}, dependencies=graph.dependencies()
    )

    for name in ("gift_wrap", "insure"):
        claim = await store.record_step_start(execution.id, name)
        run = await runner.run(execution.id, graph, claim.step_run, {"gift": False})
        assert run.status == StepStatus.SKIPPED
        assert run.skip_reason == "condition_not_met"
        assert run.attempt_count == 0

    assert calls == []
    assert [e.data["reason"] for e in emitter.of_type("step.skipped")] == [
        "condition_not_met",
        "condition_not_met",
    ]


@pytest.mark.asyncio
async def test_on_error_applies_once_retries_are_spent():
    def broken(ctx):
        raise ConnectionError("down")

    definition = (
        WorkflowDefinition(name="lenient", retry=RetryPolicy(max_attempts=1))
        .with_step("notify", broken, on_error=OnError.SKIP)
        .with_step("audit", broken, on_error="continue")
        .with_step("charge", broken)
    )
    graph = compile_definition(definition)
    store = InMemoryExecutionStore()
    runner = _runner(store)
    execution = await store.create_execution(
        graph.definition_id, {}, dependencies=graph.dependencies()
    )

    runs = {}
    for name in ("notify", "audit", "charge"):
        claim = await store.record_step_start(execution.id, name)
        runs[name] = await runner.run(execution.id, graph, claim.step_run, {})

    assert runs["notify"].status == StepStatus.SKIPPED
    assert runs["notify"].skip_reason == "on_error"
    assert runs["notify"].last_error.error_type == "ConnectionError"
    assert runs["notify"].attempt_count == 1
    assert runs["audit"].status == StepStatus.FAILED
    assert runs["audit"].tolerated is True
    assert runs["charge"].tolerated is False
    assert [r.settled for r in runs.values()] == [True, True, False]


@pytest.mark.asyncio
async def test_on_error_waits_for_retries():
    definition = WorkflowDefinition(name="later").with_step(
        "call",
        lambda ctx: fail("busy"),
        retry=RetryPolicy(max_attempts=2, initial_delay=30),
        on_error=OnError.SKIP,
    )
    graph = compile_definition(definition)
    store = InMemoryExecutionStore()
    execution = await store.create_execution(
        graph.definition_id, {}, dependencies=graph.dependencies()
    )
    claim = await store.record_step_start(execution.id, "call")

    run = await _runner(store).run(execution.id, graph, claim.step_run, {})
    assert run.status == StepStatus.FAILED
    assert run.next_attempt_at is not None
    assert run.skip_reason is None
