import asyncio
from datetime import datetime, timezone

import pytest

from taskloom.core.runtime.run_types import LogEntry, LogLevel


def _entry(run_id: str, message: str, level: LogLevel = LogLevel.info, **kw) -> LogEntry:
    return LogEntry(
        run_id=run_id,
        level=level,
        message=message,
        timestamp=datetime.now(tz=timezone.utc),
        **kw,
    )


@pytest.mark.asyncio
async def test_sequence_numbers_are_gap_free_per_run(log_store):
    for i in range(5):
        await log_store.append(_entry("run-1", f"step {i}"))
    await log_store.append(_entry("run-2", "other run"))

    seqs = [e.sequence_number for e in await log_store.stream("run-1")]
    assert seqs == [1, 2, 3, 4, 5]
    # numbering restarts per run
    assert [e.sequence_number for e in await log_store.stream("run-2")] == [1]


@pytest.mark.asyncio
async def test_concurrent_appends_never_share_a_sequence(log_store):
    stored = await asyncio.gather(
        *(log_store.append(_entry("run-1", f"msg {i}")) for i in range(20))
    )

    assert sorted(e.sequence_number for e in stored) == list(range(1, 21))
    assert len({e.log_id for e in stored}) == 20


@pytest.mark.asyncio
async def test_stream_from_sequence_is_exclusive_and_ascending(log_store):
    for i in range(6):
        await log_store.append(_entry("run-1", f"line {i}"))

    rest = await log_store.stream("run-1", 3)
    assert [e.sequence_number for e in rest] == [4, 5, 6]
    assert [e.message for e in rest] == ["line 3", "line 4", "line 5"]
    assert await log_store.stream("run-1", 6) == []


@pytest.mark.asyncio
async def test_stream_filters_and_tail(log_store):
    await log_store.append(_entry("run-1", "start"))
    await log_store.append(_entry("run-1", "bad", LogLevel.error, error_code="TIMEOUT"))
    await log_store.append(_entry("run-1", "careful", LogLevel.warn))
    await log_store.append(_entry("run-1", "worse", LogLevel.error))

    errors = await log_store.stream("run-1", levels=[LogLevel.error])
    assert [e.message for e in errors] == ["bad", "worse"]
    assert errors[0].error_code == "TIMEOUT"

    first_two = await log_store.stream("run-1", limit=2)
    assert [e.sequence_number for e in first_two] == [1, 2]

    tail = await log_store.tail("run-1", 2)
    assert [e.message for e in tail] == ["careful", "worse"]


@pytest.mark.asyncio
async def test_for_task_search_and_stats(log_store):
    await log_store.append(_entry("run-1", "Task started: Fetch", task_id="t-1", category="execution"))
    await log_store.append(
        _entry("run-1", "Task failed: 100% broken", LogLevel.error, task_id="t-1", category="error")
    )
    await log_store.append(_entry("run-1", "Task started: Join", task_id="t-2", category="execution"))

    task_logs = await log_store.for_task("t-1")
    assert [e.sequence_number for e in task_logs] == [1, 2]

    assert [e.message for e in await log_store.search("run-1", "task STARTED")] == [
        "Task started: Fetch",
        "Task started: Join",
    ]
    # wildcard characters in the query are literal
    assert [e.sequence_number for e in await log_store.search("run-1", "100%")] == [2]

    stats = await log_store.stats("run-1")
    assert stats.total == 3
    assert stats.error_count == 1
    assert stats.warning_count == 0
    assert stats.by_category == {"execution": 2, "error": 1}
    assert [e.sequence_number for e in stats.recent_errors] == [2]
