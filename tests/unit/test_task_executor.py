"""Unit tests for the per-task lifecycle."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from maestro.core.errors import LearningStoreError
from maestro.execution.agents import AgentRegistry
from maestro.execution.hooks import ExecutionContext, HookRunner
from maestro.execution.quality import QualityController
from maestro.execution.results import QCVerdict, TaskOutcome
from maestro.execution.task_executor import TaskExecutor
from maestro.knowledge.store import LearningStore
from maestro.planning.models import Task

PLAN = "plans/feature.json"
GREEN = '{"verdict": "GREEN", "feedback": "Looks good"}'
RED = '{"verdict": "RED", "feedback": "Tests missing", "should_retry": true}'


class SlowAgent:
    """Agent that never answers in time."""

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def invoke(self, task: Task) -> tuple[str, str | None]:
        self.started.set()
        await asyncio.sleep(10)
        return "late", None


@pytest.fixture
def task() -> Task:
    return Task(id="3", name="Add endpoint", prompt="Add the /users endpoint")


class TestLifecycle:
    """Tests for attempts, QC and retries."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, task: Task, make_agent) -> None:
        """Test a clean run succeeds with one attempt."""
        registry = AgentRegistry()
        registry.register("coder", make_agent([("created users.py", None)]))

        result = await TaskExecutor(registry).execute(task, PLAN, wave_number=0)

        assert result.outcome == TaskOutcome.SUCCESS
        assert result.attempts == 1
        assert result.agent == "coder"
        assert result.output == "created users.py"
        assert result.wave_number == 0
        assert result.qc_verdict == QCVerdict.GREEN

    @pytest.mark.asyncio
    async def test_red_verdict_retries(self, task: Task, make_agent, make_reviewer) -> None:
        """Test a RED verdict retries until QC passes."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        reviewer = make_reviewer([RED, RED, GREEN])
        executor = TaskExecutor(registry, quality=QualityController(reviewer), max_retries=2)

        result = await executor.execute(task, PLAN)

        assert result.outcome == TaskOutcome.SUCCESS
        assert result.attempts == 3
        assert len(agent.calls) == 3

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, task: Task, make_agent, make_reviewer) -> None:
        """Test a task fails after 1 + max_retries attempts."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        executor = TaskExecutor(
            registry,
            quality=QualityController(make_reviewer([RED])),
            max_retries=1,
        )

        result = await executor.execute(task, PLAN)

        assert result.outcome == TaskOutcome.FAILED
        assert result.attempts == 2
        assert len(agent.calls) == 2
        assert result.qc_verdict == QCVerdict.RED
        assert result.qc_feedback == "Tests missing"
        assert result.files_modified == []

    @pytest.mark.asyncio
    async def test_invocation_error_classified(self, task: Task, make_agent) -> None:
        """Test agent errors fail the attempt and are classified."""
        registry = AgentRegistry()
        registry.register("coder", make_agent([("partial", "build failed: undefined: Foo")]))

        result = await TaskExecutor(registry, max_retries=0).execute(task, PLAN)

        assert result.outcome == TaskOutcome.FAILED
        assert result.error == "build failed: undefined: Foo"
        assert result.output == "partial"
        assert result.patterns == ["compilation_error"]

    @pytest.mark.asyncio
    async def test_missing_agent(self, make_agent) -> None:
        """Test an unregistered agent fails the task without raising."""
        registry = AgentRegistry()
        registry.register("coder", make_agent())
        task = Task(id="1", agent="designer")

        result = await TaskExecutor(registry, max_retries=0).execute(task, PLAN)

        assert result.outcome == TaskOutcome.FAILED
        assert "not registered" in result.error

    @pytest.mark.asyncio
    async def test_agent_exception_is_failure(self, task: Task) -> None:
        """Test an agent raising is treated as an invocation error."""

        class CrashingAgent:
            async def invoke(self, task: Task) -> tuple[str, str | None]:
                raise ConnectionError("socket closed")

        registry = AgentRegistry()
        registry.register("coder", CrashingAgent())

        result = await TaskExecutor(registry, max_retries=0).execute(task, PLAN)

        assert result.outcome == TaskOutcome.FAILED
        assert "socket closed" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self, task: Task) -> None:
        """Test a slow agent fails with a timeout error."""
        registry = AgentRegistry()
        registry.register("coder", SlowAgent())
        executor = TaskExecutor(registry, max_retries=0, task_timeout=0.05)

        result = await executor.execute(task, PLAN)

        assert result.outcome == TaskOutcome.FAILED
        assert "timed out" in result.error
        assert "timeout" in result.patterns

    @pytest.mark.asyncio
    async def test_qc_suggested_agent(self, task: Task, make_agent, make_reviewer) -> None:
        """Test a registered agent suggested by QC takes the next attempt."""
        coder, tester = make_agent(), make_agent()
        registry = AgentRegistry()
        registry.register("coder", coder)
        registry.register("tester", tester)
        reviewer = make_reviewer([
            '{"verdict": "RED", "suggested_agent": "tester"}',
            GREEN,
        ])
        executor = TaskExecutor(registry, quality=QualityController(reviewer))

        result = await executor.execute(task, PLAN)

        assert result.outcome == TaskOutcome.SUCCESS
        assert result.agent == "tester"
        assert (len(coder.calls), len(tester.calls)) == (1, 1)

    @pytest.mark.asyncio
    async def test_task_agent_overrides_default(self, make_agent) -> None:
        """Test the task's own agent wins over the plan default."""
        coder, tester = make_agent(), make_agent()
        registry = AgentRegistry()
        registry.register("coder", coder)
        registry.register("tester", tester)

        await TaskExecutor(registry).execute(Task(id="1", agent="tester"), PLAN, default_agent="coder")

        assert len(tester.calls) == 1
        assert coder.calls == []


class TestCancellation:
    """Tests for the run-scoped cancel signal."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, task: Task, make_agent) -> None:
        """Test a set cancel event stops the task before invoking."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        cancel = asyncio.Event()
        cancel.set()

        result = await TaskExecutor(registry).execute(task, PLAN, cancel_event=cancel)

        assert result.outcome == TaskOutcome.CANCELLED
        assert result.attempts == 0
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_mid_call(self, task: Task) -> None:
        """Test cancellation interrupts a running agent call."""
        agent = SlowAgent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        cancel = asyncio.Event()

        async def cancel_when_started() -> None:
            await agent.started.wait()
            cancel.set()

        canceller = asyncio.create_task(cancel_when_started())
        result = await asyncio.wait_for(
            TaskExecutor(registry).execute(task, PLAN, cancel_event=cancel),
            timeout=5,
        )
        await canceller

        assert result.outcome == TaskOutcome.CANCELLED
        assert result.attempts == 1


class TestHooks:
    """Tests for pre/post hooks and learning integration."""

    @pytest.mark.asyncio
    async def test_failing_hook_is_isolated(self, task: Task, make_agent) -> None:
        """Test a raising hook does not fail the task."""
        seen: list[int] = []

        async def broken(ctx: ExecutionContext) -> None:
            raise RuntimeError("hook bug")

        async def recorder(ctx: ExecutionContext) -> None:
            seen.append(ctx.attempt)

        registry = AgentRegistry()
        registry.register("coder", make_agent())
        hooks = HookRunner(pre_task=[broken], post_task=[broken, recorder])

        result = await TaskExecutor(registry, hooks=hooks).execute(task, PLAN)

        assert result.success
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_learning_unavailable(self, task: Task, make_agent) -> None:
        """Test store failures never change the task outcome."""
        learning = AsyncMock(spec=LearningStore)
        learning.analyze_failures.side_effect = LearningStoreError("database is locked")
        learning.record_execution.side_effect = LearningStoreError("database is locked")
        registry = AgentRegistry()
        registry.register("coder", make_agent())

        result = await TaskExecutor(registry, learning=learning).execute(task, PLAN)

        assert result.success
        learning.record_execution.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_attempts_recorded(
        self,
        task: Task,
        make_agent,
        make_reviewer,
        learning_store: LearningStore,
    ) -> None:
        """Test every attempt is recorded with its verdict."""
        await learning_store.start_session(PLAN)
        registry = AgentRegistry()
        registry.register("coder", make_agent())
        executor = TaskExecutor(
            registry,
            quality=QualityController(make_reviewer([RED, GREEN])),
            learning=learning_store,
        )

        await executor.execute(task, PLAN)

        history = await learning_store.query(task.key, plan_identity=PLAN)
        assert [(r.attempt, r.qc_verdict, r.success) for r in history] == [
            (1, "RED", False),
            (2, "GREEN", True),
        ]

    @pytest.mark.asyncio
    async def test_agent_substituted_after_repeated_failures(
        self,
        task: Task,
        make_agent,
        learning_store: LearningStore,
    ) -> None:
        """Test two same-category failures switch the third attempt's agent."""
        await learning_store.start_session(PLAN)
        coder = make_agent([("", "compilation error in users.py")])
        fallback = make_agent([("fixed", None)])
        registry = AgentRegistry()
        registry.register("coder", coder)
        registry.register("general-purpose", fallback)
        executor = TaskExecutor(registry, learning=learning_store, max_retries=2)

        result = await executor.execute(task, PLAN)

        assert result.outcome == TaskOutcome.SUCCESS
        assert result.attempts == 3
        assert result.agent == "general-purpose"
        assert len(coder.calls) == 2
        assert "## Learning Context" in fallback.calls[0].prompt
        assert "2 past failures" in fallback.calls[0].prompt
        assert "## Learning Context" in coder.calls[1].prompt
        assert task.prompt == "Add the /users endpoint"

    @pytest.mark.asyncio
    async def test_no_substitution_when_disabled(
        self,
        task: Task,
        make_agent,
        learning_store: LearningStore,
    ) -> None:
        """Test agent adaptation can be switched off."""
        await learning_store.start_session(PLAN)
        coder = make_agent([("", "compilation error")])
        fallback = make_agent()
        registry = AgentRegistry()
        registry.register("coder", coder)
        registry.register("general-purpose", fallback)
        executor = TaskExecutor(registry, learning=learning_store, auto_adapt_agent=False)

        result = await executor.execute(task, PLAN)

        assert result.outcome == TaskOutcome.FAILED
        assert len(coder.calls) == 3
        assert fallback.calls == []
