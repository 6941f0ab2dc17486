from datetime import datetime, timedelta, timezone

import pytest

from taskloom.config.config import EngineSettings
from taskloom.core.runtime.execution_coordinator import ExecutionCoordinator
from taskloom.services.pipelines.inmem_source import InMemoryPipelineSource
from taskloom.storage.logs.inmem_store import InMemoryLogStore
from taskloom.storage.logs.sqlite_store import SqliteLogStore
from taskloom.storage.runs.inmem_store import InMemoryRunStore
from taskloom.storage.runs.sqlite_store import SqliteRunStore
from taskloom.storage.tasks.inmem_store import InMemoryTaskStore
from taskloom.storage.tasks.sqlite_store import SqliteTaskStore


class FakeClock:
    """Deterministic clock so retry timestamps can be asserted exactly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    return request.param


@pytest.fixture
def run_store(backend, tmp_path):
    if backend == "memory":
        return InMemoryRunStore()
    return SqliteRunStore(str(tmp_path / "execution.db"))


@pytest.fixture
def task_store(backend, tmp_path):
    if backend == "memory":
        return InMemoryTaskStore()
    return SqliteTaskStore(str(tmp_path / "execution.db"))


@pytest.fixture
def log_store(backend, tmp_path):
    if backend == "memory":
        return InMemoryLogStore()
    return SqliteLogStore(str(tmp_path / "execution.db"))


@pytest.fixture
def pipelines():
    src = InMemoryPipelineSource()
    # A -> B, A -> C, B -> C
    src.register(
        "pipe-abc",
        {
            "nodes": [
                {"id": "A", "type": "llm", "config": {"label": "Extract"}},
                {"id": "B", "type": "transform", "config": {"label": "Clean"}},
                {"id": "C", "type": "output", "config": {"label": "Publish"}},
            ],
            "connections": [
                {"source": "A", "target": "B"},
                {"source": "A", "target": "C"},
                {"source": "B", "target": "C"},
            ],
        },
        name="ABC pipeline",
    )
    # two independent roots feeding one join
    src.register(
        "pipe-join",
        {
            "nodes": [
                {"id": "A", "type": "fetch"},
                {"id": "B", "type": "fetch"},
                {"id": "J", "type": "join"},
            ],
            "connections": [
                {"source": "A", "target": "J"},
                {"source": "B", "target": "J"},
            ],
        },
        name="Join pipeline",
    )
    return src


@pytest.fixture
def settings():
    return EngineSettings(task_max_retries=2, task_retry_delay_ms=1000, run_max_retries=1)


@pytest.fixture
def coordinator(run_store, task_store, log_store, pipelines, settings, clock):
    return ExecutionCoordinator(
        run_store=run_store,
        task_store=task_store,
        log_store=log_store,
        pipelines=pipelines,
        settings=settings,
        clock=clock,
    )
