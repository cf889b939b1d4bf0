"""Main Maestro orchestrator - coordinates plan execution end to end.

Resolves the plan into waves, opens a learning session, drives the wave
executor across waves strictly in order, and persists resumable run state
after every wave.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from maestro.core.config import Settings, get_settings
from maestro.core.errors import LearningStoreError
from maestro.core.state import RunState, RunStatus, StateStore
from maestro.execution.agents import AgentRegistry
from maestro.execution.executor import WaveExecutor
from maestro.execution.hooks import HookRunner
from maestro.execution.locks import FileLockManager
from maestro.execution.patterns import PatternClassifier, SemanticClassifier
from maestro.execution.quality import Reviewer
from maestro.execution.results import RunResult
from maestro.execution.task_executor import TaskExecutor
from maestro.knowledge.store import LearningStore
from maestro.monitoring.loggers import CompositeRunLogger, LoguruRunLogger, RunLogger
from maestro.planning.dependency_resolver import DependencyResolver
from maestro.planning.models import DependencyGraph, Plan


class Orchestrator:
    """
    Main Maestro orchestrator class.

    Coordinates one plan run:
    1. Resolve dependencies into waves (structural errors abort here)
    2. Start a learning session (the run continues without one if unavailable)
    3. Execute waves in order, each wave's tasks in parallel
    4. Persist resumable state after every wave
    5. Report the aggregate result

    Example:
        >>> registry = AgentRegistry()
        >>> registry.register("general-purpose", SubprocessAgent(["claude", "--print"]))
        >>> orchestrator = Orchestrator(registry)
        >>> result = await orchestrator.execute_plan(plan)
        >>> print(result.summary())
    """

    def __init__(
        self,
        registry: AgentRegistry,
        settings: Settings | None = None,
        reviewer: Reviewer | None = None,
        semantic_classifier: SemanticClassifier | None = None,
        learning: LearningStore | None = None,
        run_logger: RunLogger | None = None,
        hooks: HookRunner | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Agent capabilities by name.
            settings: Optional settings override. Uses default if not provided.
            reviewer: QC reviewer (QC is skipped when None).
            semantic_classifier: Optional secondary failure classifier.
            learning: Learning store (built from settings when None and enabled).
            run_logger: Run event sink (loguru when None).
            hooks: Extra pre/post task hooks.
            state_store: Resumable state store (under settings.state_dir when None).
        """
        self.settings = settings or get_settings()
        self.registry = registry
        self.reviewer = reviewer
        self.semantic_classifier = semantic_classifier
        self.hooks = hooks

        if learning is None and self.settings.learning_enabled:
            learning = LearningStore.from_settings(self.settings)
        self.learning = learning

        self.run_logger = run_logger or CompositeRunLogger(LoguruRunLogger())
        self.state_store = state_store or StateStore(self.settings.state_path)
        self.locks = FileLockManager(self.settings.lock_dir)

    # =========================================================================
    # PLANNING
    # =========================================================================

    def resolve(self, plan: Plan) -> DependencyGraph:
        """
        Resolve a plan's waves.

        Raises:
            DuplicateTaskError: If two tasks share a key.
            UnresolvedDependencyError: If a reference names no task.
            CircularDependencyError: If the graph has a cycle.
        """
        plan.task_map()
        return DependencyResolver().resolve_plan(plan)

    async def dry_run(self, plan: Plan) -> dict[str, Any]:
        """
        Resolve the plan and report what a run would do, without invoking agents.

        Returns:
            Dict with waves, file overlaps, critical path, and resumable tasks.
        """
        resolver = DependencyResolver()
        graph = resolver.resolve_plan(plan)

        prior = self.state_store.load(plan.identity) if self.settings.skip_completed else None
        completed = prior.completed if prior else {}

        missing: set[str] = set()
        waves = []
        for wave in graph.waves:
            tasks = []
            for task in graph.get_wave_tasks(wave.number):
                agent = self.registry.resolve_name(plan.agent_for(task))
                tasks.append({
                    "key": task.key,
                    "name": task.name,
                    "agent": agent,
                    "files": task.files,
                    "resumable": completed.get(task.key) == task.fingerprint(),
                })
                if agent is None or agent not in self.registry:
                    missing.add(agent or "<unassigned>")
            waves.append({"number": wave.number, "name": wave.name, "tasks": tasks})

        logger.info(f"Dry run for {plan.identity}: {len(plan.tasks)} tasks in {graph.total_waves} waves")

        return {
            "plan_identity": plan.identity,
            "total_tasks": len(plan.tasks),
            "total_waves": graph.total_waves,
            "waves": waves,
            "file_conflicts": [c.model_dump() for c in resolver.get_conflicts()],
            "critical_path": resolver.calculate_critical_path(),
            "missing_agents": sorted(missing),
        }

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute_plan(
        self,
        plan: Plan,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        """
        Execute a plan wave by wave.

        Args:
            plan: Parsed plan (use merge_plans for several plan files).
            cancel_event: External abort signal. Also set when the run
                timeout expires.

        Returns:
            RunResult with one TaskResult per task.

        Raises:
            PlanError: If the plan is structurally invalid. Nothing runs.
        """
        graph = self.resolve(plan)
        cancel_event = cancel_event or asyncio.Event()

        logger.info(
            f"Starting run for {plan.identity}: {len(plan.tasks)} tasks in {graph.total_waves} waves"
        )

        result = RunResult(plan_identity=plan.identity)
        learning = await self._start_learning(plan, result)

        prior = self.state_store.load(plan.identity) if self.settings.skip_completed else None
        completed = dict(prior.completed) if prior else {}
        state = RunState(
            plan_identity=plan.identity,
            run_number=result.run_number,
            session_id=result.session_id,
            completed=dict(completed),
        )

        wave_executor = self._build_wave_executor(learning)
        watchdog = self._start_watchdog(cancel_event)
        blocked: dict[str, str] = {}
        started = time.monotonic()

        try:
            for wave in graph.waves:
                self.run_logger.log_wave_start(wave)

                wave_result = await wave_executor.execute_wave(
                    wave,
                    graph,
                    plan,
                    blocked=blocked,
                    completed=completed,
                    cancel_event=cancel_event,
                )
                result.waves.append(wave_result)

                for task_result in wave_result.results:
                    task = graph.nodes[task_result.task_key]
                    state.mark(task_result.task_key, task_result.outcome.value, task.fingerprint())
                self._save_state(state)

                self.run_logger.log_wave_complete(wave, wave_result.duration_seconds)
        finally:
            if watchdog is not None:
                watchdog.cancel()
            if learning is not None:
                await self._flush_learning(learning)

        result.cancelled = cancel_event.is_set()
        result.completed_at = datetime.now(timezone.utc)
        result.duration_seconds = time.monotonic() - started

        if result.cancelled:
            state.status = RunStatus.CANCELLED
        elif result.success:
            state.status = RunStatus.COMPLETED
        else:
            state.status = RunStatus.FAILED
        self._save_state(state)

        self.run_logger.log_summary(result)
        return result

    async def close(self) -> None:
        """Release the learning store."""
        if self.learning is not None:
            await self.learning.close()

    def _build_wave_executor(self, learning: LearningStore | None) -> WaveExecutor:
        classifier = PatternClassifier(
            semantic=self.semantic_classifier,
            semantic_enabled=self.settings.semantic_classifier_enabled,
            confidence_threshold=self.settings.semantic_confidence_threshold,
            semantic_timeout=self.settings.semantic_timeout,
        )
        task_executor = TaskExecutor.from_settings(
            self.settings,
            self.registry,
            reviewer=self.reviewer,
            classifier=classifier,
            learning=learning,
            hooks=self.hooks,
        )
        wave_executor = WaveExecutor(
            task_executor,
            locks=self.locks,
            max_concurrency=self.settings.max_concurrency,
            skip_completed=self.settings.skip_completed,
        )
        wave_executor.add_callback(self.run_logger.log_task_result)
        return wave_executor

    async def _start_learning(self, plan: Plan, result: RunResult) -> LearningStore | None:
        """Open a learning session. The run degrades to no history on failure."""
        if self.learning is None:
            return None

        try:
            session = await self.learning.start_session(plan.identity)
        except LearningStoreError as e:
            logger.warning(f"Learning store unavailable, continuing without history: {e}")
            return None

        result.session_id = session.session_id
        result.run_number = session.run_number
        result.learning_available = True
        return self.learning

    @staticmethod
    async def _flush_learning(learning: LearningStore) -> None:
        try:
            await learning.flush()
        except LearningStoreError as e:
            logger.warning(f"Could not flush learning records: {e}")

    def _start_watchdog(self, cancel_event: asyncio.Event) -> asyncio.Task | None:
        timeout = self.settings.run_timeout
        if timeout is None:
            return None

        async def watchdog() -> None:
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=timeout)
            except TimeoutError:
                logger.warning(f"Run timeout of {timeout}s reached, cancelling remaining tasks")
                cancel_event.set()

        return asyncio.create_task(watchdog())

    def _save_state(self, state: RunState) -> None:
        try:
            self.state_store.save(state)
        except OSError as e:
            logger.error(f"Failed to save run state: {e}")

    def __repr__(self) -> str:
        return (
            f"Orchestrator(agents={self.registry.names()}, "
            f"max_concurrency={self.settings.max_concurrency}, "
            f"learning={'on' if self.learning else 'off'})"
        )


async def execute_plan(
    plan: Plan,
    registry: AgentRegistry,
    settings: Settings | None = None,
    cancel_event: asyncio.Event | None = None,
) -> RunResult:
    """
    Convenience function to run a plan with default collaborators.

    Example:
        >>> result = await execute_plan(plan, registry)
    """
    orchestrator = Orchestrator(registry, settings=settings)
    try:
        return await orchestrator.execute_plan(plan, cancel_event=cancel_event)
    finally:
        await orchestrator.close()
