import pytest


def test_imports():
    import taskloom  # noqa: F401

    from taskloom import (
        DispatchTask,
        ExecutionCoordinator,
        ExecutionOptions,
        InMemoryPipelineSource,
        LogLevel,
        PipelineConfiguration,
        PipelineDefinition,
        RetryPolicy,
        RunStatus,
        TaskFailure,
        TaskMetrics,
        TaskResult,
        TaskStatus,
        build_coordinator,
    )
    from taskloom.contracts.errors.errors import (
        ConfigurationNotFoundError,
        InvalidStateError,
        PermanentTaskError,
        RetryLimitExceededError,
        RunNotFoundError,
        TaskNotFoundError,
        TransientTaskError,
    )


@pytest.mark.asyncio
async def test_build_coordinator_end_to_end(tmp_path):
    from taskloom import InMemoryPipelineSource, RunStatus, build_coordinator
    from taskloom.config.config import AppSettings
    from taskloom.services.logger.std import LoggingConfig, StdLoggerService

    pipelines = InMemoryPipelineSource()
    pipelines.register("hello", {"nodes": [{"id": "greet", "type": "echo"}]})
    coordinator = build_coordinator(
        AppSettings(root=str(tmp_path), storage={"backend": "memory"}),
        pipelines=pipelines,
        logger_service=StdLoggerService.build(LoggingConfig(root_ns="taskloom-smoke")),
    )

    run = await coordinator.start_execution("hello", "user-1", {"name": "world"})
    (task,) = await coordinator.execute_next_tasks(run.run_id)
    await coordinator.complete_task(task.id, {"success": True, "outputs": {"text": "hello world"}})

    status = await coordinator.get_execution_status(run.run_id)
    assert status.run.status == RunStatus.completed
    assert status.run.outputs == {"greet": {"text": "hello world"}}
