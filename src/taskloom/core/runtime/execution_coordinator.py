from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from taskloom.config.config import EngineSettings
from taskloom.contracts.errors.errors import (
    ConfigurationNotFoundError,
    InvalidConfigurationError,
    InvalidStateError,
    RetryLimitExceededError,
    RunNotFoundError,
    TaskNotFoundError,
)
from taskloom.contracts.services.pipelines import PipelineSource
from taskloom.contracts.services.runs import RunStore
from taskloom.contracts.services.tasks import TaskStore
from taskloom.contracts.storage.log_store import LogStore
from taskloom.core.runtime.boundary_types import (
    DispatchTask,
    ExecutionOptions,
    ExecutionStatusView,
    ExecutionStreamView,
    ProgressSummary,
    TaskFailure,
    TaskResult,
)
from taskloom.core.runtime.readiness import ReadinessResolver
from taskloom.core.runtime.retry_policy import RetryPolicy
from taskloom.core.runtime.run_types import (
    ACTIVE_RUN_STATUSES,
    ExecutionMetrics,
    LogEntry,
    LogLevel,
    RunRecord,
    RunStatus,
    TaskRecord,
    TaskStatus,
)
from taskloom.services.logger.base import LogContext, LoggerService

_logger = logging.getLogger("taskloom.coordinator")

_PY_LEVELS = {
    LogLevel.debug: logging.DEBUG,
    LogLevel.info: logging.INFO,
    LogLevel.warn: logging.WARNING,
    LogLevel.error: logging.ERROR,
}

_SOURCE = "execution-coordinator"
_RUNNING = (TaskStatus.running,)
_PENDING = (TaskStatus.pending,)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ExecutionCoordinator:
    """
    Drives pipeline runs through persisted state only:

    - start_execution() materializes one task row per pipeline node.
    - execute_next_tasks() claims ready tasks for an executor (PENDING -> RUNNING, conditional).
    - complete_task() / handle_task_failure() apply executor reports, including retries.
    - evaluate_completion() flips the run to COMPLETED or FAILED; safe to call redundantly.
    - cancel_execution() / retry_execution() are the caller-driven run transitions.

    No task is executed here and nothing waits: scheduled retries and timeouts are persisted
    timestamps that an external sweep picks up (see due_retries() and timed_out_*()).
    """

    def __init__(
        self,
        *,
        run_store: RunStore,
        task_store: TaskStore,
        log_store: LogStore,
        pipelines: PipelineSource,
        settings: EngineSettings | None = None,
        logger_service: LoggerService | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._runs = run_store
        self._tasks = task_store
        self._logs = log_store
        self._pipelines = pipelines
        self._settings = settings or EngineSettings()
        self._log_service = logger_service
        self._clock = clock or _utcnow
        self._readiness = ReadinessResolver(task_store)
        # serializes completion evaluation within this process; cross-process exclusivity
        # comes from the conditional status update
        self._eval_locks: dict[str, asyncio.Lock] = {}

    # -------- helpers --------

    def _now(self) -> datetime:
        return self._clock()

    def _pylogger(
        self, run_id: str, task_id: str | None = None, node_id: str | None = None
    ) -> logging.Logger | logging.LoggerAdapter:
        if self._log_service is not None:
            if task_id is not None:
                return self._log_service.for_task_ctx(run_id=run_id, task_id=task_id, node_id=node_id)
            return self._log_service.for_run_ctx(run_id=run_id)
        ctx = LogContext(run_id=run_id, task_id=task_id, node_id=node_id)
        return logging.LoggerAdapter(_logger, dict(ctx.as_extra()))

    async def _log(
        self,
        run_id: str,
        level: LogLevel,
        message: str,
        *,
        category: str,
        task: TaskRecord | None = None,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LogEntry:
        entry = LogEntry(
            run_id=run_id,
            level=level,
            message=message,
            timestamp=self._now(),
            task_id=task.task_id if task is not None else None,
            category=category,
            source=_SOURCE,
            error_code=error_code,
            metadata=dict(metadata or {}),
        )
        stored = await self._logs.append(entry)
        self._pylogger(
            run_id,
            task.task_id if task is not None else None,
            task.node_id if task is not None else None,
        ).log(_PY_LEVELS[level], "%s (seq=%d)", message, stored.sequence_number)
        return stored

    def _policy_for(self, run: RunRecord | None) -> RetryPolicy:
        if run is not None and run.retry_strategy:
            return RetryPolicy.from_dict(run.retry_strategy)
        return self._settings.retry_policy()

    def _eval_lock(self, run_id: str) -> asyncio.Lock:
        lock = self._eval_locks.get(run_id)
        if lock is None:
            lock = self._eval_locks[run_id] = asyncio.Lock()
        return lock

    async def _require_run(self, run_id: str) -> RunRecord:
        run = await self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def _require_task(self, task_id: str) -> TaskRecord:
        task = await self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _refresh_progress(self, run_id: str) -> RunRecord | None:
        # counters always come from the task rows, never from a previous run write
        tasks = await self._tasks.list_by_run(run_id)
        completed = sum(1 for t in tasks if t.status == TaskStatus.completed)
        now = self._now()

        def _apply(r: RunRecord) -> RunRecord:
            r.with_counts(completed, len(tasks))
            r.last_update_at = now
            return r

        return await self._runs.update(run_id, _apply)

    async def _ignore_stale(self, task: TaskRecord, what: str) -> TaskRecord:
        await self._log(
            task.run_id,
            LogLevel.warn,
            f"Ignoring {what} reported for task {task.node_name} in status {task.status.value}",
            category="execution",
            task=task,
        )
        return task

    @staticmethod
    def _dispatch(run: RunRecord, task: TaskRecord, tasks: list[TaskRecord]) -> DispatchTask:
        by_node = {t.node_id: t for t in tasks}
        upstream = {
            node_id: dict(by_node[node_id].outputs or {})
            for node_id in task.dependencies
            if node_id in by_node
        }
        return DispatchTask(
            id=task.task_id,
            run_id=task.run_id,
            node_id=task.node_id,
            node_type=task.node_type,
            config=dict(task.config),
            inputs=dict(run.inputs),
            upstream=upstream,
            attempt=task.retry_count + 1,
        )

    # -------- start --------

    async def start_execution(
        self,
        pipeline_id: str,
        user_id: str,
        inputs: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> RunRecord:
        definition = await self._pipelines.get_pipeline(pipeline_id)
        if definition is None:
            raise ConfigurationNotFoundError(pipeline_id)

        configuration = definition.configuration
        unknown = configuration.unknown_references()
        if unknown:
            raise InvalidConfigurationError(pipeline_id, unknown)

        opts = options or ExecutionOptions()
        policy = opts.retry_policy or self._settings.retry_policy()
        now = self._now()
        run_id = f"run-{uuid4().hex[:12]}"

        tasks = [
            TaskRecord(
                task_id=f"task-{uuid4().hex[:12]}",
                run_id=run_id,
                node_id=node.id,
                node_name=node.label,
                node_type=node.type,
                status=TaskStatus.pending,
                execution_order=index,
                queued_at=now,
                config=dict(node.config),
                dependencies=configuration.dependencies_of(node.id),
                max_retries=policy.max_retries,
                retry_delay_ms=policy.base_delay_ms,
                last_update_at=now,
            )
            for index, node in enumerate(configuration.nodes)
        ]

        run = RunRecord(
            run_id=run_id,
            pipeline_id=pipeline_id,
            user_id=user_id,
            status=RunStatus.queued,
            configuration=configuration.model_dump(),
            queued_at=now,
            inputs=dict(inputs or {}),
            total_tasks=len(tasks),
            max_retries=(
                opts.max_retries if opts.max_retries is not None else self._settings.run_max_retries
            ),
            priority=opts.priority,
            scheduled_for=opts.scheduled_for,
            timeout_at=now + timedelta(milliseconds=opts.timeout_ms) if opts.timeout_ms else None,
            retry_strategy=policy.to_dict(),
            executor_id=opts.executor_id,
            last_update_at=now,
        )

        # Task rows first, in one batch: the run only becomes visible once its full task
        # set exists.
        await self._tasks.create_many(tasks)
        await self._runs.create(run)

        await self._log(
            run_id,
            LogLevel.info,
            f"Pipeline execution started: {definition.name}",
            category="system",
            metadata={"pipeline_id": pipeline_id, "total_tasks": len(tasks)},
        )
        return run

    # -------- dispatch --------

    async def execute_next_tasks(
        self, run_id: str, executor_id: str | None = None
    ) -> list[DispatchTask]:
        """
        Claim every task that is ready now and hand it to the calling executor.

        Concurrent callers never receive the same task: each claim is a conditional
        PENDING -> RUNNING update and losers simply skip the task.
        """
        run = await self._require_run(run_id)
        if run.status not in ACTIVE_RUN_STATUSES:
            raise InvalidStateError(
                f"Cannot execute tasks for run in status: {run.status.value}",
                status=run.status.value,
            )

        now = self._now()
        if run.status == RunStatus.queued:
            if run.scheduled_for is not None and run.scheduled_for > now:
                return []

            def _start(r: RunRecord) -> RunRecord:
                r.status = RunStatus.running
                r.started_at = r.started_at or now
                r.executor_id = executor_id or r.executor_id
                r.last_update_at = now
                return r

            started = await self._runs.update(run_id, _start, expected=(RunStatus.queued,))
            run = started or await self._require_run(run_id)
            if run.status not in ACTIVE_RUN_STATUSES:
                return []

        snap = await self._readiness.snapshot(run_id, now=now)
        if not snap.ready:
            await self.evaluate_completion(run_id)
            return []

        def _claim(t: TaskRecord) -> TaskRecord:
            t.status = TaskStatus.running
            t.started_at = now
            t.completed_at = None
            t.retry_at = None
            t.executor_id = executor_id
            t.last_update_at = now
            timeout_ms = t.config.get("timeout_ms")
            t.timeout_at = now + timedelta(milliseconds=int(timeout_ms)) if timeout_ms else None
            return t

        claimed: list[DispatchTask] = []
        for task in snap.ready:
            got = await self._tasks.update(task.task_id, _claim, expected=_PENDING)
            if got is None:
                continue  # another poller won the claim
            await self._log(
                run_id,
                LogLevel.info,
                f"Task started: {got.node_name}",
                category="execution",
                task=got,
                metadata={"attempt": got.retry_count + 1, "executor_id": executor_id},
            )
            claimed.append(self._dispatch(run, got, snap.tasks))

        await self._refresh_progress(run_id)
        return claimed

    # -------- task reports --------

    async def complete_task(
        self, task_id: str, result: TaskResult | dict[str, Any]
    ) -> TaskRecord:
        if not isinstance(result, TaskResult):
            result = TaskResult.model_validate(result)

        task = await self._require_task(task_id)
        if not result.success:
            return await self.handle_task_failure(task_id, result.error)

        now = self._now()
        outputs = dict(result.outputs or {})
        metrics = result.metrics.to_core() if result.metrics is not None else None

        def _complete(t: TaskRecord) -> TaskRecord:
            t.status = TaskStatus.completed
            t.outputs = outputs
            t.metrics = metrics
            t.error = None
            t.failure_reason = None
            t.progress = 1.0
            t.completed_at = now
            t.last_update_at = now
            return t

        done = await self._tasks.update(task_id, _complete, expected=_RUNNING)
        if done is None:
            return await self._ignore_stale(await self._require_task(task_id), "result")

        await self._log(
            task.run_id,
            LogLevel.info,
            f"Task completed successfully: {done.node_name}",
            category="execution",
            task=done,
            metadata={"duration": metrics.duration} if metrics is not None else None,
        )
        await self._refresh_progress(task.run_id)
        await self.evaluate_completion(task.run_id)
        return done

    async def handle_task_failure(
        self,
        task_id: str,
        error: TaskFailure | BaseException | dict[str, Any] | None,
    ) -> TaskRecord:
        """
        Record a failed attempt.

        Retryable codes with budget left go back to PENDING with a backoff timestamp;
        anything else fails the task for good and lets the completion policy decide the run.
        The ERROR entry is written before either transition.
        """
        failure = TaskFailure.coerce(error)
        task = await self._require_task(task_id)
        if task.status != TaskStatus.running:
            return await self._ignore_stale(task, "failure")

        metadata: dict[str, Any] = dict(failure.details or {})
        if failure.stack:
            metadata["stack"] = failure.stack
        await self._log(
            task.run_id,
            LogLevel.error,
            f"Task failed: {failure.message}",
            category="error",
            task=task,
            error_code=failure.code,
            metadata=metadata,
        )

        now = self._now()
        policy = self._policy_for(await self._runs.get(task.run_id))

        if policy.should_retry(failure.code, task.retry_count, task.max_retries):
            delay_ms = policy.delay_ms(task.retry_count, task.retry_delay_ms)

            def _retry(t: TaskRecord) -> TaskRecord:
                if t.retry_count >= t.max_retries:
                    raise RetryLimitExceededError("task", t.task_id, t.retry_count, t.max_retries)
                t.retry_at = now + timedelta(milliseconds=policy.delay_ms(t.retry_count, t.retry_delay_ms))
                t.retry_count += 1
                t.status = TaskStatus.pending
                t.started_at = None
                t.completed_at = None
                t.error = None
                t.failure_reason = None
                t.progress = 0.0
                t.executor_id = None
                t.timeout_at = None
                t.last_update_at = now
                return t

            retried = await self._tasks.update(task_id, _retry, expected=_RUNNING)
            if retried is None:
                return await self._ignore_stale(await self._require_task(task_id), "failure")
            await self._log(
                task.run_id,
                LogLevel.info,
                f"Task scheduled for retry (attempt {retried.retry_count})",
                category="retry",
                task=retried,
                metadata={
                    "retry_at": retried.retry_at.isoformat() if retried.retry_at else None,
                    "delay_ms": delay_ms,
                    "error_code": failure.code,
                },
            )
            return retried

        error_payload = failure.model_dump(exclude_none=True)

        def _fail(t: TaskRecord) -> TaskRecord:
            t.status = TaskStatus.failed
            t.error = error_payload
            t.failure_reason = f"{failure.code}: {failure.message}"
            t.retry_at = None
            t.completed_at = now
            t.last_update_at = now
            return t

        failed = await self._tasks.update(task_id, _fail, expected=_RUNNING)
        if failed is None:
            return await self._ignore_stale(await self._require_task(task_id), "failure")

        await self.evaluate_completion(task.run_id)
        return failed

    # -------- completion policy --------

    async def evaluate_completion(self, run_id: str) -> RunRecord | None:
        """
        Idempotent completion check.

        - COMPLETED when every task is COMPLETED (outputs and metrics aggregated).
        - FAILED when at least one task FAILED and nothing is ready; a task waiting on a
          scheduled retry still counts as ready here.
        Only the caller whose conditional update succeeds performs the transition; every
        other evaluation is a no-op that returns the current run.
        """
        async with self._eval_lock(run_id):
            result = await self._evaluate(run_id)
        if result is None or result.is_terminal:
            # later evaluations of a finished run are no-ops and need no serialization
            self._eval_locks.pop(run_id, None)
        return result

    async def _evaluate(self, run_id: str) -> RunRecord | None:
        run = await self._runs.get(run_id)
        if run is None or run.status not in ACTIVE_RUN_STATUSES:
            return run

        snap = await self._readiness.snapshot(run_id)
        tasks = snap.tasks
        completed = [t for t in tasks if t.status == TaskStatus.completed]
        now = self._now()

        if len(completed) == len(tasks):
            outputs = {t.node_id: t.outputs for t in completed if t.outputs is not None}
            metrics = ExecutionMetrics.aggregate([t.metrics for t in completed if t.metrics])

            def _complete(r: RunRecord) -> RunRecord:
                r.status = RunStatus.completed
                r.outputs = outputs
                r.metrics = metrics
                r.with_counts(len(completed), len(tasks))
                # a run without tasks is trivially done
                r.progress = 1.0
                r.completed_at = now
                r.last_update_at = now
                return r

            done = await self._runs.update(run_id, _complete, expected=ACTIVE_RUN_STATUSES)
            if done is None:
                return await self._runs.get(run_id)
            await self._log(
                run_id,
                LogLevel.info,
                "Pipeline execution completed successfully",
                category="system",
                metadata={"total_tasks": len(tasks), "duration": metrics.duration},
            )
            return done

        failed = [t for t in tasks if t.status == TaskStatus.failed]
        if failed and not snap.ready:
            error = {
                "code": "PIPELINE_EXECUTION_FAILED",
                "message": "Pipeline failed due to task failures",
                "failed_tasks": [
                    {
                        "task_id": t.task_id,
                        "node_id": t.node_id,
                        "node_name": t.node_name,
                        "error": t.error,
                    }
                    for t in failed
                ],
            }
            await self._log(
                run_id,
                LogLevel.error,
                f"Pipeline execution failed: {len(failed)} task(s) failed",
                category="error",
                error_code=error["code"],
                metadata=error,
            )

            def _fail(r: RunRecord) -> RunRecord:
                r.status = RunStatus.failed
                r.error = error
                r.failure_reason = "Task execution failures"
                r.with_counts(len(completed), len(tasks))
                r.completed_at = now
                r.last_update_at = now
                return r

            marked = await self._runs.update(run_id, _fail, expected=ACTIVE_RUN_STATUSES)
            return marked or await self._runs.get(run_id)

        return run

    # -------- caller-driven run transitions --------

    async def cancel_execution(self, run_id: str, reason: str = "Cancelled by user") -> RunRecord:
        """
        Cooperative cancellation: rows are marked, in-flight executor work is not preempted.
        """
        run = await self._require_run(run_id)
        if run.is_terminal:
            raise InvalidStateError(
                f"Cannot cancel run in status: {run.status.value}", status=run.status.value
            )
        now = self._now()

        def _cancel_run(r: RunRecord) -> RunRecord:
            r.status = RunStatus.cancelled
            r.failure_reason = reason
            r.completed_at = now
            r.last_update_at = now
            return r

        # The run flips first so pollers stop claiming; pending tasks are swept before
        # running ones to catch a claim that slipped in between.
        cancelled = await self._runs.update(run_id, _cancel_run, expected=ACTIVE_RUN_STATUSES)
        if cancelled is None:
            current = await self._require_run(run_id)
            raise InvalidStateError(
                f"Cannot cancel run in status: {current.status.value}", status=current.status.value
            )
        self._eval_locks.pop(run_id, None)

        def _cancel_pending(t: TaskRecord) -> TaskRecord:
            t.status = TaskStatus.cancelled
            t.retry_at = None
            t.completed_at = now
            t.last_update_at = now
            return t

        def _fail_running(t: TaskRecord) -> TaskRecord:
            t.status = TaskStatus.failed
            t.error = {"code": "CANCELLED", "message": "Task cancelled"}
            t.failure_reason = "cancelled"
            t.completed_at = now
            t.last_update_at = now
            return t

        pending = await self._tasks.update_where(run_id, _cancel_pending, expected=_PENDING)
        running = await self._tasks.update_where(run_id, _fail_running, expected=_RUNNING)

        await self._log(
            run_id,
            LogLevel.warn,
            f"Pipeline execution cancelled: {reason}",
            category="system",
            metadata={"cancelled_tasks": len(pending), "interrupted_tasks": len(running)},
        )
        return cancelled

    async def retry_execution(self, run_id: str) -> RunRecord:
        run = await self._require_run(run_id)
        if run.status != RunStatus.failed:
            raise InvalidStateError("Can only retry failed executions", status=run.status.value)
        if run.retry_count >= run.max_retries:
            raise RetryLimitExceededError("run", run_id, run.retry_count, run.max_retries)
        now = self._now()

        def _reset_task(t: TaskRecord) -> TaskRecord:
            t.status = TaskStatus.pending
            t.error = None
            t.failure_reason = None
            t.outputs = None
            t.metrics = None
            t.progress = 0.0
            t.retry_at = None
            t.started_at = None
            t.completed_at = None
            t.executor_id = None
            t.timeout_at = None
            t.last_update_at = now
            return t

        def _requeue(r: RunRecord) -> RunRecord:
            if r.retry_count >= r.max_retries:
                raise RetryLimitExceededError("run", r.run_id, r.retry_count, r.max_retries)
            r.status = RunStatus.queued
            r.retry_count += 1
            r.started_at = None
            r.completed_at = None
            r.error = None
            r.failure_reason = None
            r.outputs = None
            r.metrics = None
            r.last_update_at = now
            return r

        # Tasks first: a crash in between leaves a FAILED run that can simply be retried again.
        await self._tasks.update_where(run_id, _reset_task, expected=(TaskStatus.failed,))
        retried = await self._runs.update(run_id, _requeue, expected=(RunStatus.failed,))
        if retried is None:
            current = await self._require_run(run_id)
            raise InvalidStateError("Can only retry failed executions", status=current.status.value)

        retried = await self._refresh_progress(run_id) or retried
        await self._log(
            run_id,
            LogLevel.info,
            f"Pipeline execution retried (attempt {retried.retry_count})",
            category="retry",
        )
        return retried

    # -------- observability --------

    async def get_execution_status(self, run_id: str) -> ExecutionStatusView | None:
        """Snapshot for pollers. Unknown runs yield None rather than an error."""
        run = await self._runs.get(run_id)
        if run is None:
            return None
        tasks = await self._tasks.list_by_run(run_id)
        logs = await self._logs.tail(run_id, self._settings.recent_log_limit)

        completed = sum(1 for t in tasks if t.status == TaskStatus.completed)
        progress = ProgressSummary(
            total=len(tasks),
            completed=completed,
            running=sum(1 for t in tasks if t.status == TaskStatus.running),
            failed=sum(1 for t in tasks if t.status == TaskStatus.failed),
            percentage=(completed / len(tasks) * 100.0) if tasks else 0.0,
        )
        return ExecutionStatusView(run=run, tasks=tasks, progress=progress, recent_logs=logs)

    async def get_execution_stream(
        self, run_id: str, from_sequence: int = 0
    ) -> ExecutionStreamView | None:
        run = await self._runs.get(run_id)
        if run is None:
            return None
        logs = await self._logs.stream(run_id, from_sequence)
        tasks = await self._tasks.list_by_run(run_id)
        return ExecutionStreamView(run=run, tasks=tasks, logs=logs)

    async def get_log_stream(self, run_id: str, from_sequence: int = 0) -> list[LogEntry]:
        return await self._logs.stream(run_id, from_sequence)

    async def record_cache(self, task_id: str, cache_key: str, cached: bool) -> TaskRecord:
        now = self._now()

        def _cache(t: TaskRecord) -> TaskRecord:
            t.cache_key = cache_key
            t.cached = cached
            t.last_update_at = now
            return t

        updated = await self._tasks.update(task_id, _cache)
        if updated is None:
            raise TaskNotFoundError(task_id)
        return updated

    async def report_progress(
        self, task_id: str, progress: float, message: str | None = None
    ) -> TaskRecord:
        """
        Mid-task progress from an executor, as a fraction in [0, 1].

        Only RUNNING tasks accept it; a report for any other status returns the current row
        unchanged. `message`, when given, is kept as a DEBUG checkpoint entry in the run log.
        """
        if not 0.0 <= progress <= 1.0:
            raise ValueError(f"progress must be within [0, 1], got {progress!r}")
        now = self._now()

        def _progress(t: TaskRecord) -> TaskRecord:
            t.progress = progress
            t.last_update_at = now
            return t

        updated = await self._tasks.update(task_id, _progress, expected=_RUNNING)
        if updated is None:
            return await self._require_task(task_id)
        if message:
            await self._log(
                updated.run_id,
                LogLevel.debug,
                message,
                category="progress",
                task=updated,
                metadata={"progress": progress},
            )
        return updated

    # -------- reaper queries (the sweep itself runs elsewhere) --------

    async def due_retries(self, now: datetime | None = None) -> list[TaskRecord]:
        return await self._tasks.find_due_retries(now or self._now())

    async def timed_out_tasks(self, now: datetime | None = None) -> list[TaskRecord]:
        return await self._tasks.find_timed_out(now or self._now())

    async def timed_out_runs(self, now: datetime | None = None) -> list[RunRecord]:
        return await self._runs.find_timed_out(now or self._now())

    async def queued_runs(self, limit: int = 50) -> list[RunRecord]:
        return await self._runs.find_queued(self._now(), limit=limit)
