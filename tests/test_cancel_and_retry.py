import pytest

from taskloom.contracts.errors.errors import (
    InvalidStateError,
    RetryLimitExceededError,
    RunNotFoundError,
)
from taskloom.core.runtime.run_types import LogLevel, RunStatus, TaskStatus


async def _fail_first_task(coordinator, pipeline_id="pipe-abc"):
    run = await coordinator.start_execution(pipeline_id, "user-1")
    (a,) = await coordinator.execute_next_tasks(run.run_id)
    await coordinator.handle_task_failure(a.id, {"code": "VALIDATION_ERROR", "message": "bad input"})
    return run, a


@pytest.mark.asyncio
async def test_cancel_running_run(coordinator):
    run = await coordinator.start_execution("pipe-join", "user-1")
    a, b = await coordinator.execute_next_tasks(run.run_id)

    cancelled = await coordinator.cancel_execution(run.run_id, "user requested stop")

    assert cancelled.status == RunStatus.cancelled
    assert cancelled.failure_reason == "user requested stop"
    status = await coordinator.get_execution_status(run.run_id)
    by_node = {t.node_id: t for t in status.tasks}
    assert by_node["J"].status == TaskStatus.cancelled
    for node_id in ("A", "B"):
        assert by_node[node_id].status == TaskStatus.failed
        assert by_node[node_id].failure_reason == "cancelled"
        assert by_node[node_id].error["code"] == "CANCELLED"

    last = status.recent_logs[-1]
    assert last.level == LogLevel.warn
    assert last.message == "Pipeline execution cancelled: user requested stop"


@pytest.mark.asyncio
async def test_cancelled_run_rejects_further_work(coordinator):
    run = await coordinator.start_execution("pipe-join", "user-1")
    a, _ = await coordinator.execute_next_tasks(run.run_id)
    await coordinator.cancel_execution(run.run_id)

    with pytest.raises(InvalidStateError):
        await coordinator.execute_next_tasks(run.run_id)
    with pytest.raises(InvalidStateError):
        await coordinator.cancel_execution(run.run_id)

    # a late report from the executor does not resurrect the task
    late = await coordinator.complete_task(a.id, {"success": True, "outputs": {"x": 1}})
    assert late.status == TaskStatus.failed
    assert (await coordinator.get_execution_status(run.run_id)).run.status == RunStatus.cancelled


@pytest.mark.asyncio
async def test_cancel_queued_run_and_unknown_run(coordinator):
    run = await coordinator.start_execution("pipe-abc", "user-1")
    cancelled = await coordinator.cancel_execution(run.run_id)
    assert cancelled.status == RunStatus.cancelled

    status = await coordinator.get_execution_status(run.run_id)
    assert {t.status for t in status.tasks} == {TaskStatus.cancelled}

    with pytest.raises(RunNotFoundError):
        await coordinator.cancel_execution("run-missing")


@pytest.mark.asyncio
async def test_retry_failed_run_resets_failed_tasks(coordinator):
    run, a = await _fail_first_task(coordinator)
    assert (await coordinator.get_execution_status(run.run_id)).run.status == RunStatus.failed

    retried = await coordinator.retry_execution(run.run_id)

    assert retried.status == RunStatus.queued
    assert retried.retry_count == 1
    assert retried.error is None
    assert retried.completed_at is None
    task = next(
        t for t in (await coordinator.get_execution_status(run.run_id)).tasks if t.task_id == a.id
    )
    assert task.status == TaskStatus.pending
    assert task.error is None
    assert task.outputs is None
    assert task.progress == 0.0

    (again,) = await coordinator.execute_next_tasks(run.run_id)
    assert again.id == a.id


@pytest.mark.asyncio
async def test_retry_keeps_completed_work(coordinator):
    run = await coordinator.start_execution("pipe-join", "user-1")
    a, b = await coordinator.execute_next_tasks(run.run_id)
    await coordinator.complete_task(a.id, {"success": True, "outputs": {"v": 1}})
    await coordinator.handle_task_failure(b.id, {"code": "AUTH", "message": "denied"})

    retried = await coordinator.retry_execution(run.run_id)
    assert retried.completed_tasks == 1
    assert retried.progress == pytest.approx(1 / 3)

    (b_again,) = await coordinator.execute_next_tasks(run.run_id)
    assert b_again.id == b.id


@pytest.mark.asyncio
async def test_retry_requires_failed_run(coordinator):
    run = await coordinator.start_execution("pipe-abc", "user-1")
    await coordinator.execute_next_tasks(run.run_id)
    with pytest.raises(InvalidStateError):
        await coordinator.retry_execution(run.run_id)

    done = await coordinator.start_execution("pipe-join", "user-1")
    for _ in range(2):
        for d in await coordinator.execute_next_tasks(done.run_id):
            await coordinator.complete_task(d.id, {"success": True})
    assert (await coordinator.get_execution_status(done.run_id)).run.status == RunStatus.completed
    with pytest.raises(InvalidStateError):
        await coordinator.retry_execution(done.run_id)

    with pytest.raises(RunNotFoundError):
        await coordinator.retry_execution("run-missing")


@pytest.mark.asyncio
async def test_run_retry_budget(coordinator):
    # settings fixture allows a single run-level retry
    run, _ = await _fail_first_task(coordinator)
    await coordinator.retry_execution(run.run_id)

    (a,) = await coordinator.execute_next_tasks(run.run_id)
    await coordinator.handle_task_failure(a.id, {"code": "VALIDATION_ERROR", "message": "still bad"})

    with pytest.raises(RetryLimitExceededError):
        await coordinator.retry_execution(run.run_id)
    assert (await coordinator.get_execution_status(run.run_id)).run.status == RunStatus.failed
