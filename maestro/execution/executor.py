"""
Wave executor for Maestro.

Runs every task of one wave concurrently under a semaphore. Each task holds
locks on the files it touches for as long as it runs; a lock that is already
held fails that task immediately. A failed or cancelled task blocks only its
transitive dependents, which are reported as skipped in later waves.
"""

import asyncio
import time
from collections.abc import Callable

from loguru import logger

from maestro.core.config import Settings
from maestro.core.errors import LockConflictError
from maestro.execution.locks import FileLockManager
from maestro.execution.results import TaskOutcome, TaskResult, WaveResult
from maestro.execution.task_executor import TaskExecutor
from maestro.planning.models import DependencyGraph, Plan, Task, TaskStatus, Wave

ResultCallback = Callable[[TaskResult], None]

_STATUS = {
    TaskOutcome.SUCCESS: TaskStatus.SUCCESS,
    TaskOutcome.FAILED: TaskStatus.FAILED,
    TaskOutcome.SKIPPED: TaskStatus.SKIPPED,
    TaskOutcome.CANCELLED: TaskStatus.CANCELLED,
}


class WaveExecutor:
    """
    Execute the tasks of a wave in parallel.

    Attributes:
        max_concurrency: Maximum tasks running at once.
        skip_completed: Reuse successes recorded by an earlier run.

    Example:
        >>> executor = WaveExecutor(task_executor, FileLockManager(".maestro/locks"))
        >>> result = await executor.execute_wave(wave, graph, plan, blocked={})
        >>> print(f"Completed: {len(result.completed_tasks)}")
    """

    def __init__(
        self,
        task_executor: TaskExecutor,
        locks: FileLockManager | None = None,
        max_concurrency: int = 10,
        skip_completed: bool = True,
    ) -> None:
        """
        Initialize wave executor.

        Args:
            task_executor: Runs each task's lifecycle.
            locks: File lock manager (locks disabled when None).
            max_concurrency: Maximum concurrent tasks (default 10).
            skip_completed: Reuse prior successes with an unchanged fingerprint.
        """
        self.task_executor = task_executor
        self.locks = locks
        self.max_concurrency = max_concurrency
        self.skip_completed = skip_completed
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._callbacks: list[ResultCallback] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        task_executor: TaskExecutor,
    ) -> "WaveExecutor":
        return cls(
            task_executor,
            locks=FileLockManager(settings.lock_dir),
            max_concurrency=settings.max_concurrency,
            skip_completed=settings.skip_completed,
        )

    def add_callback(self, callback: ResultCallback) -> None:
        """Add a callback for task completion events."""
        self._callbacks.append(callback)

    def _emit_callback(self, result: TaskResult) -> None:
        for callback in self._callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.warning(f"Callback error: {e}")

    async def execute_wave(
        self,
        wave: Wave,
        graph: DependencyGraph,
        plan: Plan,
        blocked: dict[str, str],
        completed: dict[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> WaveResult:
        """
        Execute all tasks in a wave.

        Args:
            wave: Wave to run.
            graph: Resolved dependency graph of the plan.
            plan: Plan being executed (for identity and default agent).
            blocked: Task key -> reason for tasks that must be skipped.
                Updated in place with the dependents of tasks that fail here.
            completed: Task key -> fingerprint of successes from earlier runs.
            cancel_event: Run-scoped cancellation signal.

        Returns:
            WaveResult with one result per task, in wave order.
        """
        started = time.monotonic()
        tasks = [graph.nodes[key] for key in wave.task_keys if key in graph.nodes]
        completed = completed or {}

        logger.info(f"Executing {wave.name} with {len(tasks)} tasks")

        results: dict[str, TaskResult] = {}
        dispatch: list[Task] = []

        for task in tasks:
            result = self._precheck(task, blocked, completed, cancel_event)
            if result is not None:
                results[task.key] = result
                continue

            if self.locks is not None and task.files:
                try:
                    self.locks.acquire(task.key, task.files)
                except LockConflictError as e:
                    results[task.key] = TaskResult(
                        task_key=task.key,
                        task_name=task.name,
                        outcome=TaskOutcome.FAILED,
                        error=str(e),
                    )
                    continue

            dispatch.append(task)

        try:
            outcomes = await asyncio.gather(
                *(self._execute_with_semaphore(task, plan, wave, cancel_event) for task in dispatch),
                return_exceptions=True,
            )
        finally:
            if self.locks is not None:
                for task in dispatch:
                    self.locks.release(task.key)

        for task, outcome in zip(dispatch, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    outcome = TaskResult.cancelled(task.key, "Task cancelled", task_name=task.name)
                else:
                    logger.exception(f"Task {task.key} raised unexpectedly: {outcome}")
                    outcome = TaskResult(
                        task_key=task.key,
                        task_name=task.name,
                        outcome=TaskOutcome.FAILED,
                        error=str(outcome),
                    )
            results[task.key] = outcome

        ordered: list[TaskResult] = []
        for task in tasks:
            result = results[task.key]
            result.wave_number = wave.number
            task.status = _STATUS[result.outcome]
            if result.outcome in (TaskOutcome.FAILED, TaskOutcome.CANCELLED, TaskOutcome.SKIPPED):
                self._block_dependents(graph, task.key, result.outcome, blocked)
            ordered.append(result)
            self._emit_callback(result)

        wave_result = WaveResult(
            wave_number=wave.number,
            results=ordered,
            duration_seconds=time.monotonic() - started,
        )

        logger.info(
            f"{wave.name} complete: "
            f"{len(wave_result.completed_tasks)} succeeded, "
            f"{len(wave_result.failed_tasks)} failed, "
            f"{len(wave_result.skipped_tasks)} skipped"
        )

        return wave_result

    def _precheck(
        self,
        task: Task,
        blocked: dict[str, str],
        completed: dict[str, str],
        cancel_event: asyncio.Event | None,
    ) -> TaskResult | None:
        """Result for a task that will not be dispatched, else None."""
        if self.skip_completed and completed.get(task.key) == task.fingerprint():
            logger.info(f"Task {task.key} already completed in a previous run, skipping")
            return TaskResult(
                task_key=task.key,
                task_name=task.name,
                outcome=TaskOutcome.SUCCESS,
                resumed=True,
                files_modified=list(task.files),
            )

        if cancel_event is not None and cancel_event.is_set():
            return TaskResult.cancelled(task.key, task_name=task.name)

        if task.key in blocked:
            logger.info(f"Skipping task {task.key}: {blocked[task.key]}")
            return TaskResult.skipped(task.key, blocked[task.key], task_name=task.name)

        return None

    async def _execute_with_semaphore(
        self,
        task: Task,
        plan: Plan,
        wave: Wave,
        cancel_event: asyncio.Event | None,
    ) -> TaskResult:
        """Execute task with semaphore for concurrency control."""
        async with self._semaphore:
            if cancel_event is not None and cancel_event.is_set():
                return TaskResult.cancelled(task.key, task_name=task.name)

            task.status = TaskStatus.RUNNING
            try:
                return await self.task_executor.execute(
                    task,
                    plan_identity=plan.identity,
                    default_agent=plan.default_agent,
                    cancel_event=cancel_event,
                    wave_number=wave.number,
                )
            finally:
                if self.locks is not None:
                    self.locks.release(task.key)

    @staticmethod
    def _block_dependents(
        graph: DependencyGraph,
        key: str,
        outcome: TaskOutcome,
        blocked: dict[str, str],
    ) -> None:
        reason = f"dependency {key} {outcome.value}"
        for dependent in graph.get_transitive_dependents(key):
            blocked.setdefault(dependent, reason)
