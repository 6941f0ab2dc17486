import os
from dataclasses import dataclass

from taskloom.config.config import AppSettings
from taskloom.contracts.services.runs import RunStore
from taskloom.contracts.services.tasks import TaskStore
from taskloom.contracts.storage.log_store import LogStore
from taskloom.storage.logs.inmem_store import InMemoryLogStore
from taskloom.storage.runs.inmem_store import InMemoryRunStore
from taskloom.storage.tasks.inmem_store import InMemoryTaskStore


@dataclass
class ExecutionStores:
    runs: RunStore
    tasks: TaskStore
    logs: LogStore


def build_execution_stores(cfg: AppSettings) -> ExecutionStores:
    """
    Decide which backend holds run/task/log rows based on AppSettings.storage.backend.
    """
    st_cfg = cfg.storage

    if st_cfg.backend == "memory":
        return ExecutionStores(
            runs=InMemoryRunStore(),
            tasks=InMemoryTaskStore(),
            logs=InMemoryLogStore(),
        )

    if st_cfg.backend == "sqlite":
        from taskloom.storage.logs.sqlite_store import SqliteLogStore
        from taskloom.storage.runs.sqlite_store import SqliteRunStore
        from taskloom.storage.tasks.sqlite_store import SqliteTaskStore

        root = os.path.abspath(cfg.root)
        path = os.path.join(root, st_cfg.sqlite.path)
        return ExecutionStores(
            runs=SqliteRunStore(path),
            tasks=SqliteTaskStore(path),
            logs=SqliteLogStore(path),
        )

    raise ValueError(f"Unknown execution storage backend: {st_cfg.backend!r}")
