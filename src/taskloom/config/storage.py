from typing import Literal

from pydantic import BaseModel

# --- Per-backend settings ---


class SqliteExecutionStoreSettings(BaseModel):
    # Interpreted relative to AppSettings.root in the factory. Runs, tasks and logs share
    # one database file so they can be inspected together.
    path: str = "execution/execution.db"


class StorageSettings(BaseModel):
    # which backend holds run/task/log rows
    #   - "memory": process-local, lost on restart (tests/dev)
    #   - "sqlite": durable, safe for several pollers sharing the file
    backend: Literal["memory", "sqlite"] = "sqlite"

    sqlite: SqliteExecutionStoreSettings = SqliteExecutionStoreSettings()
