from datetime import datetime, timedelta, timezone

import pytest

from taskloom.core.runtime.run_types import TaskRecord, TaskStatus

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _task(task_id: str, node_id: str, order: int, **kw) -> TaskRecord:
    fields = {
        "run_id": "run-1",
        "node_name": node_id,
        "node_type": "noop",
        "status": TaskStatus.pending,
        "queued_at": NOW,
    }
    fields.update(kw)
    return TaskRecord(task_id=task_id, node_id=node_id, execution_order=order, **fields)


def _claim(t: TaskRecord) -> TaskRecord:
    t.status = TaskStatus.running
    return t


@pytest.mark.asyncio
async def test_create_many_and_list_in_execution_order(task_store):
    await task_store.create_many(
        [
            _task("t-b", "B", 1, dependencies=["A"]),
            _task("t-a", "A", 0, config={"prompt": "hi"}),
        ]
    )

    rows = await task_store.list_by_run("run-1")
    assert [t.node_id for t in rows] == ["A", "B"]
    assert rows[1].dependencies == ["A"]
    assert rows[0].config == {"prompt": "hi"}

    found = await task_store.find_by_node("run-1", "B")
    assert found is not None and found.task_id == "t-b"
    assert await task_store.find_by_node("run-1", "Z") is None
    assert await task_store.list_by_run("other-run") == []


@pytest.mark.asyncio
async def test_conditional_claim_has_single_winner(task_store):
    await task_store.create_many([_task("t-a", "A", 0)])

    first = await task_store.update("t-a", _claim, expected=[TaskStatus.pending])
    second = await task_store.update("t-a", _claim, expected=[TaskStatus.pending])

    assert first is not None and first.status == TaskStatus.running
    assert second is None
    running = await task_store.list_by_status("run-1", TaskStatus.running)
    assert [t.task_id for t in running] == ["t-a"]


@pytest.mark.asyncio
async def test_update_where_only_touches_expected_statuses(task_store):
    await task_store.create_many(
        [
            _task("t-a", "A", 0, status=TaskStatus.completed),
            _task("t-b", "B", 1),
            _task("t-c", "C", 2),
        ]
    )

    def _cancel(t: TaskRecord) -> TaskRecord:
        t.status = TaskStatus.cancelled
        return t

    changed = await task_store.update_where("run-1", _cancel, expected=[TaskStatus.pending])

    assert [t.task_id for t in changed] == ["t-b", "t-c"]
    statuses = {t.task_id: t.status for t in await task_store.list_by_run("run-1")}
    assert statuses == {
        "t-a": TaskStatus.completed,
        "t-b": TaskStatus.cancelled,
        "t-c": TaskStatus.cancelled,
    }


@pytest.mark.asyncio
async def test_mutation_error_leaves_row_untouched(task_store):
    await task_store.create_many([_task("t-a", "A", 0)])

    def _boom(t: TaskRecord) -> TaskRecord:
        t.status = TaskStatus.failed
        raise RuntimeError("mutation rejected")

    with pytest.raises(RuntimeError):
        await task_store.update("t-a", _boom)

    again = await task_store.get("t-a")
    assert again.status == TaskStatus.pending


@pytest.mark.asyncio
async def test_due_retries_and_timeouts(task_store):
    await task_store.create_many(
        [
            _task("due", "A", 0, retry_count=1, retry_at=NOW - timedelta(seconds=1)),
            _task("later", "B", 1, retry_count=1, retry_at=NOW + timedelta(minutes=5)),
            _task(
                "stuck",
                "C",
                2,
                status=TaskStatus.running,
                timeout_at=NOW - timedelta(seconds=30),
            ),
        ]
    )

    due = await task_store.find_due_retries(NOW)
    assert [t.task_id for t in due] == ["due"]
    assert due[0].retry_at == NOW - timedelta(seconds=1)

    timed_out = await task_store.find_timed_out(NOW)
    assert [t.task_id for t in timed_out] == ["stuck"]
