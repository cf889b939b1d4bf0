"""
Per-task lifecycle.

Each attempt walks the same states:

    Pending -> PreHook -> Invoking -> Reviewing -> Classifying -> PostHook

and the task ends Success, Failed, or Cancelled. A failing verdict or an
invocation error sends the task back to Pending while retry budget remains.
The run-scoped cancel event is checked at every transition and raced against
the agent call itself.
"""

import asyncio
import time

from loguru import logger

from maestro.core.config import Settings
from maestro.core.errors import InvocationError, MaestroError, RunCancelledError
from maestro.execution.agents import AgentRegistry
from maestro.execution.hooks import ExecutionContext, HookRunner
from maestro.execution.patterns import PatternClassifier
from maestro.execution.quality import QualityController, Reviewer
from maestro.execution.results import TaskOutcome, TaskResult
from maestro.knowledge.analysis import format_learning_context
from maestro.knowledge.schemas import ExecutionRecord
from maestro.knowledge.store import LearningStore
from maestro.planning.models import Task


class TaskExecutor:
    """
    Execute one task through its full lifecycle, with retries.

    Attributes:
        max_retries: Extra attempts after the first one.
        task_timeout: Seconds allowed per agent invocation (None for no limit).

    Example:
        >>> executor = TaskExecutor(registry, quality=QualityController(reviewer))
        >>> result = await executor.execute(task, plan_identity="plans/feature.md")
        >>> result.outcome
        <TaskOutcome.SUCCESS: 'success'>
    """

    def __init__(
        self,
        registry: AgentRegistry,
        quality: QualityController | None = None,
        classifier: PatternClassifier | None = None,
        learning: LearningStore | None = None,
        hooks: HookRunner | None = None,
        max_retries: int = 2,
        task_timeout: float | None = None,
        auto_adapt_agent: bool = True,
    ) -> None:
        """
        Initialize task executor.

        Args:
            registry: Agent capabilities by name.
            quality: QC stage (QC disabled when None).
            classifier: Failure-pattern classifier.
            learning: Learning store consulted by the built-in hooks.
            hooks: Extra pre/post hooks, run after the learning hooks.
            max_retries: Extra attempts after the first one.
            task_timeout: Seconds allowed per agent invocation.
            auto_adapt_agent: Apply suggested agent substitutions.
        """
        self.registry = registry
        self.quality = quality or QualityController(enabled=False)
        self.classifier = classifier or PatternClassifier()
        self.learning = learning
        self.max_retries = max_retries
        self.task_timeout = task_timeout
        self.auto_adapt_agent = auto_adapt_agent

        self.hooks = HookRunner()
        if learning is not None:
            self.hooks.add_pre_task(self._learning_pre_hook)
            self.hooks.add_post_task(self._learning_post_hook)
        if hooks is not None:
            self.hooks.pre_task.extend(hooks.pre_task)
            self.hooks.post_task.extend(hooks.post_task)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: AgentRegistry,
        reviewer: Reviewer | None = None,
        classifier: PatternClassifier | None = None,
        learning: LearningStore | None = None,
        hooks: HookRunner | None = None,
    ) -> "TaskExecutor":
        """Create an executor configured from application settings."""
        return cls(
            registry,
            quality=QualityController(
                reviewer,
                enabled=settings.qc_enabled,
                timeout=settings.qc_timeout,
            ),
            classifier=classifier or PatternClassifier(
                semantic_enabled=settings.semantic_classifier_enabled,
                confidence_threshold=settings.semantic_confidence_threshold,
                semantic_timeout=settings.semantic_timeout,
            ),
            learning=learning,
            hooks=hooks,
            max_retries=settings.max_retries,
            task_timeout=settings.task_timeout,
            auto_adapt_agent=settings.auto_adapt_agent,
        )

    @property
    def max_attempts(self) -> int:
        return 1 + self.max_retries

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def execute(
        self,
        task: Task,
        plan_identity: str,
        default_agent: str | None = None,
        cancel_event: asyncio.Event | None = None,
        wave_number: int | None = None,
    ) -> TaskResult:
        """
        Run a task until it succeeds, exhausts its retries, or is cancelled.

        Args:
            task: Task to execute. Its prompt is never mutated.
            plan_identity: Identity used for learning lookups.
            default_agent: Agent used when the task names none.
            cancel_event: Run-scoped cancellation signal.
            wave_number: Wave index for the result.

        Returns:
            TaskResult with outcome SUCCESS, FAILED, or CANCELLED.
        """
        started = time.monotonic()
        agent = self.registry.resolve_name(task.agent or default_agent)
        ctx: ExecutionContext | None = None

        logger.info(f"Executing task: {task.display_name}")

        try:
            for attempt in range(1, self.max_attempts + 1):
                self._check_cancelled(task, cancel_event)

                ctx = ExecutionContext(
                    task=task,
                    plan_identity=plan_identity,
                    attempt=attempt,
                    agent=agent,
                    prompt=task.prompt,
                    original_prompt=task.prompt,
                )
                await self._attempt(ctx, cancel_event)

                if ctx.success:
                    logger.info(
                        f"Task {task.key} succeeded on attempt {attempt} "
                        f"(agent={ctx.agent})"
                    )
                    return self._result(ctx, TaskOutcome.SUCCESS, started, wave_number)

                agent = self._next_agent(ctx)
                if attempt < self.max_attempts:
                    logger.warning(
                        f"Task {task.key} attempt {attempt}/{self.max_attempts} failed, retrying: "
                        f"{ctx.error or 'QC verdict RED'}"
                    )

        except RunCancelledError as e:
            logger.warning(f"Task {task.key} cancelled: {e}")
            result = TaskResult.cancelled(task.key, str(e), task_name=task.name)
            result.agent = ctx.agent if ctx else agent
            result.attempts = ctx.attempt if ctx else 0
            result.duration_seconds = time.monotonic() - started
            result.wave_number = wave_number
            return result

        logger.error(f"Task {task.key} failed after {self.max_attempts} attempts")
        return self._result(ctx, TaskOutcome.FAILED, started, wave_number)

    async def _attempt(self, ctx: ExecutionContext, cancel_event: asyncio.Event | None) -> None:
        """One pass through PreHook -> Invoking -> Reviewing -> Classifying -> PostHook."""
        attempt_started = time.monotonic()

        await self.hooks.run_pre_task(ctx)
        self._check_cancelled(ctx.task, cancel_event)

        invoked = ctx.task.model_copy(update={"prompt": ctx.prompt, "agent": ctx.agent})

        try:
            ctx.output = await self._invoke(invoked, cancel_event)
        except InvocationError as e:
            ctx.output = e.output
            ctx.error = str(e)
            ctx.success = False
        else:
            self._check_cancelled(ctx.task, cancel_event)
            ctx.qc = await self.quality.review(invoked, ctx.output)
            ctx.success = ctx.qc.passed

        if not ctx.success:
            self._check_cancelled(ctx.task, cancel_event)
            feedback = ctx.qc.summary() if ctx.qc else None
            ctx.patterns = await self.classifier.classify(
                "\n".join(p for p in (ctx.output, ctx.error) if p),
                feedback,
            )
            if ctx.patterns.matched:
                logger.info(f"Task {ctx.task_key} failure patterns: {', '.join(ctx.patterns.categories)}")

        ctx.duration_seconds = time.monotonic() - attempt_started
        await self.hooks.run_post_task(ctx)

    async def _invoke(self, task: Task, cancel_event: asyncio.Event | None) -> str:
        """
        Call the agent, bounded by the task timeout and the cancel event.

        Raises:
            InvocationError: Missing agent, transport failure, error value, or timeout.
            RunCancelledError: The cancel event fired mid-call.
        """
        agent = self.registry.require(task.agent, task.key)

        call = asyncio.ensure_future(
            asyncio.wait_for(agent.invoke(task), timeout=self.task_timeout)
        )
        waiters: set[asyncio.Future] = {call}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if call not in done:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            raise RunCancelledError(f"Run cancelled while {task.key} was running")

        try:
            output, error = call.result()
        except TimeoutError as e:
            raise InvocationError(task.key, f"Agent timed out after {self.task_timeout}s") from e
        except MaestroError:
            raise
        except Exception as e:
            raise InvocationError(task.key, f"Agent invocation failed: {e}") from e

        if error:
            raise InvocationError(task.key, error, output=output or "")

        return output or ""

    def _next_agent(self, ctx: ExecutionContext) -> str | None:
        """Agent for the next attempt. QC may suggest a registered alternative."""
        suggested = ctx.qc.suggested_agent if ctx.qc else None
        if (
            self.auto_adapt_agent
            and suggested
            and suggested != ctx.agent
            and suggested in self.registry
        ):
            logger.info(f"QC suggested agent for {ctx.task_key}: {ctx.agent} -> {suggested}")
            return suggested
        return ctx.agent

    @staticmethod
    def _check_cancelled(task: Task, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(f"Run cancelled before {task.key} could continue")

    def _result(
        self,
        ctx: ExecutionContext,
        outcome: TaskOutcome,
        started: float,
        wave_number: int | None,
    ) -> TaskResult:
        qc = ctx.qc
        return TaskResult(
            task_key=ctx.task_key,
            task_name=ctx.task.name,
            outcome=outcome,
            agent=ctx.agent,
            attempts=ctx.attempt,
            qc_verdict=qc.verdict if qc else None,
            qc_feedback=(qc.summary() or None) if qc else None,
            output=ctx.output or None,
            error=ctx.error,
            duration_seconds=time.monotonic() - started,
            files_modified=list(ctx.task.files) if outcome == TaskOutcome.SUCCESS else [],
            patterns=list(ctx.patterns.categories) if ctx.patterns else [],
            wave_number=wave_number,
        )

    # =========================================================================
    # LEARNING HOOKS
    # =========================================================================

    async def _learning_pre_hook(self, ctx: ExecutionContext) -> None:
        """Add failure context to the prompt and apply an agent substitution."""
        analysis = await self.learning.analyze_failures(ctx.task_key, plan_identity=ctx.plan_identity)
        ctx.analysis = analysis

        block = format_learning_context(analysis)
        if block:
            ctx.prompt = ctx.original_prompt + block

        suggested = analysis.suggested_agent
        if not (self.auto_adapt_agent and analysis.should_try_different_agent and suggested):
            return
        if suggested == ctx.agent:
            return
        if suggested not in self.registry:
            logger.debug(f"Suggested agent {suggested} for {ctx.task_key} is not registered")
            return

        logger.info(
            f"Switching agent for {ctx.task_key}: {ctx.agent} -> {suggested} "
            f"({analysis.streak_length} consecutive {analysis.streak_category} failures)"
        )
        ctx.agent = suggested

    async def _learning_post_hook(self, ctx: ExecutionContext) -> None:
        """Persist this attempt as an execution record."""
        patterns = ctx.patterns
        record = ExecutionRecord(
            task_key=ctx.task_key,
            task_name=ctx.task.name,
            agent=ctx.agent,
            outcome=TaskOutcome.SUCCESS.value if ctx.success else TaskOutcome.FAILED.value,
            success=ctx.success,
            attempt=ctx.attempt,
            duration_seconds=ctx.duration_seconds,
            qc_verdict=ctx.qc.verdict.value if ctx.qc else None,
            qc_feedback=ctx.qc.feedback if ctx.qc else None,
            output=ctx.output or None,
            error=ctx.error,
            patterns=list(patterns.categories) if patterns else [],
            pattern_keywords=dict(patterns.keywords) if patterns else {},
        )
        await self.learning.record_execution(record)
