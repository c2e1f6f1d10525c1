"""Execution store contract tests, run against every local backend."""

from datetime import timedelta

import pytest

from sagaflow.contracts import (
    ApprovalDecision,
    AwaitingApproval,
    ExecutionStatus,
    Failure,
    Skipped,
    StepError,
    StepStatus,
    Success,
    utcnow,
)
from sagaflow.errors import (
    ExecutionNotFound,
    InvalidTransition,
    NotAwaitingApproval,
    PersistenceError,
)
from sagaflow.persistence import InMemoryExecutionStore, SQLiteExecutionStore

DEPS = {"reserve": [], "charge": ["reserve"], "ship": ["reserve"]}


@pytest.fixture(params=["inmemory", "sqlite"])
def store(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryExecutionStore()
    return SQLiteExecutionStore(tmp_path / "store.db")


async def _new(store):
    return await store.create_execution("order@1", {"order_id": 7}, dependencies=DEPS)


@pytest.mark.asyncio
async def test_create_and_get(store):
    execution = await _new(store)
    loaded = await store.get_execution(execution.id)
    assert loaded.status == ExecutionStatus.PENDING
    assert loaded.context == {"order_id": 7}
    assert loaded.dependencies == DEPS
    assert await store.get_execution("nope") is None


@pytest.mark.asyncio
async def test_runnable_steps_follow_predecessors(store):
    execution = await _new(store)
    assert await store.list_runnable_steps(execution.id) == {"reserve"}

    await store.record_step_start(execution.id, "reserve")
    assert await store.list_runnable_steps(execution.id) == set()

    await store.record_step_result(execution.id, "reserve", Success(payload={"hold": 1}))
    assert await store.list_runnable_steps(execution.id) == {"charge", "ship"}


@pytest.mark.asyncio
async def test_claim_is_idempotent(store):
    execution = await _new(store)
    first = await store.record_step_start(execution.id, "reserve")
    second = await store.record_step_start(execution.id, "reserve")
    assert first.acquired is True
    assert second.acquired is False
    assert second.step_run.status == StepStatus.RUNNING


@pytest.mark.asyncio
async def test_cannot_claim_before_predecessors(store):
    execution = await _new(store)
    claim = await store.record_step_start(execution.id, "charge")
    assert claim.acquired is False
    assert claim.step_run is None


@pytest.mark.asyncio
async def test_success_merges_context(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    run = await store.record_step_result(
        execution.id, "reserve", Success(payload={"order_id": 8, "hold": "h1"})
    )
    assert run.status == StepStatus.SUCCEEDED
    assert run.attempt_count == 1
    loaded = await store.get_execution(execution.id)
    assert loaded.context == {"order_id": 8, "hold": "h1"}
    assert loaded.initial_context == {"order_id": 7}

    merged = await store.merge_context(execution.id, {"hold": "h2"})
    assert merged.context["hold"] == "h2"


@pytest.mark.asyncio
async def test_failure_with_retry_becomes_runnable_when_due(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    past = utcnow() - timedelta(seconds=1)
    run = await store.record_step_result(
        execution.id,
        "reserve",
        Failure(error=StepError(error_type="ValueError"), retry_at=past),
    )
    assert run.status == StepStatus.FAILED
    assert run.attempt_count == 1
    assert await store.list_runnable_steps(execution.id) == {"reserve"}

    claim = await store.record_step_start(execution.id, "reserve")
    assert claim.acquired
    assert claim.step_run.attempt_count == 1


@pytest.mark.asyncio
async def test_terminal_failure_is_not_runnable(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    run = await store.record_step_result(
        execution.id, "reserve", Failure(error=StepError(error_type="ValueError"))
    )
    assert run.terminal_failure
    assert await store.list_runnable_steps(execution.id) == set()


@pytest.mark.asyncio
async def test_result_requires_running_step(store):
    execution = await _new(store)
    with pytest.raises(InvalidTransition):
        await store.record_step_result(execution.id, "reserve", Success())


@pytest.mark.asyncio
async def test_approval_resolution(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    run = await store.record_step_result(execution.id, "reserve", AwaitingApproval())
    assert run.status == StepStatus.AWAITING_APPROVAL
    assert run.approval == ApprovalDecision.PENDING
    assert run.attempt_count == 0

    run = await store.resolve_approval(execution.id, "reserve", ApprovalDecision.APPROVED)
    assert run.status == StepStatus.PENDING
    assert run.approval == ApprovalDecision.APPROVED
    with pytest.raises(NotAwaitingApproval):
        await store.resolve_approval(execution.id, "reserve", ApprovalDecision.APPROVED)


@pytest.mark.asyncio
async def test_rejection_fails_step(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    await store.record_step_result(execution.id, "reserve", AwaitingApproval())
    run = await store.resolve_approval(execution.id, "reserve", ApprovalDecision.REJECTED)
    assert run.terminal_failure
    assert run.last_error.error_type == "approval_rejected"


@pytest.mark.asyncio
async def test_status_transitions_are_validated(store):
    execution = await _new(store)
    await store.update_execution_status(execution.id, ExecutionStatus.RUNNING)
    error = StepError(error_type="boom")
    failed = await store.update_execution_status(
        execution.id, ExecutionStatus.COMPENSATING, error=error
    )
    assert failed.error.error_type == "boom"
    with pytest.raises(InvalidTransition):
        await store.update_execution_status(execution.id, ExecutionStatus.COMPLETED)
    done = await store.update_execution_status(execution.id, ExecutionStatus.COMPENSATED)
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_rollback_bookkeeping(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    await store.record_step_result(execution.id, "reserve", Success())
    error = StepError(error_type="RuntimeError", message="release failed")
    run = await store.mark_rolled_back(execution.id, "reserve", error)
    assert run.status == StepStatus.ROLLED_BACK
    assert run.rollback_error.message == "release failed"
    loaded = await store.record_compensation_error(execution.id, error)
    assert loaded.compensation_errors == [error]


@pytest.mark.asyncio
async def test_cancellation_and_missing_execution(store):
    execution = await _new(store)
    cancelled = await store.request_cancellation(execution.id)
    assert cancelled.cancel_requested
    with pytest.raises(ExecutionNotFound):
        await store.request_cancellation("missing")


@pytest.mark.asyncio
async def test_list_and_schedule_state(store):
    first = await _new(store)
    second = await store.create_execution("other@1", {}, dependencies={"a": []})
    await store.update_execution_status(second.id, ExecutionStatus.RUNNING)

    assert [e.id for e in await store.list_executions()] == [first.id, second.id]
    assert [e.id for e in await store.list_executions(status=ExecutionStatus.RUNNING)] == [
        second.id
    ]
    assert [e.id for e in await store.list_executions(definition_id="order@1")] == [first.id]

    assert await store.get_schedule_state("nightly") is None
    now = utcnow()
    await store.save_schedule_state("nightly", now)
    assert await store.get_schedule_state("nightly") == now


@pytest.mark.asyncio
async def test_returned_copies_do_not_alias(store):
    execution = await _new(store)
    execution.context["mutated"] = True
    loaded = await store.get_execution(execution.id)
    assert "mutated" not in loaded.context


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "durable.db"
    store = SQLiteExecutionStore(path)
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    await store.record_step_result(execution.id, "reserve", Success(payload={"hold": 1}))
    await store.record_step_start(execution.id, "charge")
    store.close()

    reopened = SQLiteExecutionStore(path)
    loaded = await reopened.get_execution(execution.id)
    assert loaded.context["hold"] == 1
    assert loaded.step_run("reserve").status == StepStatus.SUCCEEDED
    assert loaded.step_run("charge").status == StepStatus.RUNNING
    assert [r.step_name for r in loaded.steps] == ["reserve", "charge"]
    claim = await reopened.record_step_start(execution.id, "charge")
    assert claim.acquired is False


@pytest.mark.asyncio
async def test_skipped_and_tolerated_steps_unblock_dependents(store):
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")
    run = await store.record_step_result(
        execution.id, "reserve", Skipped(reason="condition_not_met")
    )
    assert run.status == StepStatus.SKIPPED
    assert await store.list_runnable_steps(execution.id) == {"charge", "ship"}

    await store.record_step_start(execution.id, "charge")
    run = await store.record_step_result(
        execution.id,
        "charge",
        Failure(error=StepError(error_type="ValueError"), tolerated=True),
    )
    assert run.terminal_failure and run.tolerated
    await store.record_step_start(execution.id, "ship")
    await store.record_step_result(execution.id, "ship", Success())

    loaded = await store.get_execution(execution.id)
    assert loaded.all_settled
    assert loaded.progress() == {"skipped": 1, "failed": 1, "succeeded": 1, "not_started": 0}


@pytest.mark.asyncio
async def test_pause_blocks_claims_until_resumed(store):
    execution = await _new(store)
    paused = await store.request_pause(execution.id)
    assert paused.pause_requested
    assert await store.list_runnable_steps(execution.id) == set()
    assert (await store.record_step_start(execution.id, "reserve")).acquired is False

    paused = await store.update_execution_status(execution.id, ExecutionStatus.PAUSED)
    assert paused.paused_at is not None

    resumed = await store.resume_execution(execution.id, {"priority": "high"})
    assert resumed.status == ExecutionStatus.RUNNING
    assert resumed.pause_requested is False
    assert resumed.paused_at is None
    assert resumed.context == {"order_id": 7, "priority": "high"}
    assert await store.list_runnable_steps(execution.id) == {"reserve"}

    with pytest.raises(InvalidTransition):
        await store.resume_execution(execution.id)


@pytest.mark.asyncio
async def test_finished_execution_ignores_pause(store):
    execution = await _new(store)
    await store.update_execution_status(execution.id, ExecutionStatus.FAILED)
    assert (await store.request_pause(execution.id)).pause_requested is False


@pytest.mark.asyncio
async def test_sqlite_rejects_unserializable_state(tmp_path):
    class Token:
        pass

    store = SQLiteExecutionStore(tmp_path / "store.db")
    execution = await _new(store)
    await store.record_step_start(execution.id, "reserve")

    with pytest.raises(PersistenceError):
        await store.record_step_result(
            execution.id, "reserve", Success(payload={"token": Token()})
        )
    # the failed write rolled back, leaving the claim in place
    loaded = await store.get_execution(execution.id)
    assert loaded.step_run("reserve").status == StepStatus.RUNNING
    assert loaded.context == {"order_id": 7}
    store.close()
