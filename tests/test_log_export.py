import csv
import io
import json

import pytest

from taskloom.services.logs.export import export_logs


async def _finished_run(coordinator):
    run = await coordinator.start_execution("pipe-join", "user-1")
    a, b = await coordinator.execute_next_tasks(run.run_id)
    await coordinator.complete_task(a.id, {"success": True})
    await coordinator.handle_task_failure(b.id, {"code": "AUTH", "message": "denied, sorry"})
    return run


@pytest.mark.asyncio
async def test_export_json(coordinator, log_store):
    run = await _finished_run(coordinator)

    payload = json.loads(await export_logs(log_store, run.run_id, "json"))

    assert [e["sequence_number"] for e in payload] == list(range(1, len(payload) + 1))
    errors = [e for e in payload if e["level"] == "ERROR"]
    assert errors[0]["error_code"] == "AUTH"
    assert payload[0]["category"] == "system"


@pytest.mark.asyncio
async def test_export_csv(coordinator, log_store):
    run = await _finished_run(coordinator)

    rows = list(csv.reader(io.StringIO(await export_logs(log_store, run.run_id, "csv"))))

    assert rows[0][0] == "sequence_number"
    assert rows[1][0] == "1"
    # commas inside messages survive quoting
    assert any(r[-1] == "Task failed: denied, sorry" for r in rows[1:])


@pytest.mark.asyncio
async def test_export_text_and_unknown_format(coordinator, log_store):
    run = await _finished_run(coordinator)

    text = await export_logs(log_store, run.run_id, "text")
    lines = text.splitlines()
    assert "#1 Pipeline execution started: Join pipeline" in lines[0]
    assert any(" ERROR " in line and "denied, sorry" in line for line in lines)

    with pytest.raises(ValueError):
        await export_logs(log_store, run.run_id, "xml")
