"""Integration tests for the orchestrator."""

import asyncio
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from maestro.core.config import Settings
from maestro.core.errors import CircularDependencyError, LearningStoreError, UnresolvedDependencyError
from maestro.core.orchestrator import Orchestrator, execute_plan
from maestro.core.state import RunStatus
from maestro.execution.agents import AgentRegistry
from maestro.execution.results import TaskOutcome
from maestro.knowledge.store import LearningStore
from maestro.monitoring.loggers import CompositeRunLogger
from maestro.planning.models import Plan, Task, TaskRef, merge_plans


def failing_b(task: Task) -> tuple[str, str | None]:
    if task.id == "B":
        return "", "UI build exploded"
    return f"done {task.key}", None


@pytest.fixture
def registry(make_agent) -> AgentRegistry:
    registry = AgentRegistry()
    registry.register("coder", make_agent(handler=failing_b))
    return registry


@pytest_asyncio.fixture
async def orchestrator(
    registry: AgentRegistry,
    settings: Settings,
) -> AsyncGenerator[Orchestrator, None]:
    orchestrator = Orchestrator(registry, settings=settings)

    yield orchestrator

    await orchestrator.close()


@pytest.mark.integration
class TestOrchestrator:
    """Tests for end-to-end plan execution."""

    @pytest.mark.asyncio
    async def test_failure_isolated_to_subgraph(self, orchestrator: Orchestrator, sample_plan: Plan) -> None:
        """Test A succeeds, B fails and C is skipped."""
        result = await orchestrator.execute_plan(sample_plan)

        assert result.outcomes() == {
            "A": TaskOutcome.SUCCESS,
            "B": TaskOutcome.FAILED,
            "C": TaskOutcome.SKIPPED,
        }
        assert (result.succeeded, result.failed, result.skipped) == (1, 1, 1)
        assert not result.success
        assert result.learning_available
        assert result.run_number == 1
        assert len(result.waves) == 2

    @pytest.mark.asyncio
    async def test_attempts_recorded(self, orchestrator: Orchestrator, sample_plan: Plan) -> None:
        """Test every attempt lands in the learning session."""
        result = await orchestrator.execute_plan(sample_plan)

        document = await orchestrator.learning.export_session(result.session_id)
        attempts = [(r["task_key"], r["attempt"]) for r in document["records"]]

        assert ("A", 1) in attempts
        assert [a for key, a in attempts if key == "B"] == [1, 2, 3]
        assert all(key != "C" for key, _ in attempts)

    @pytest.mark.asyncio
    async def test_learning_unavailable_same_outcomes(
        self,
        registry: AgentRegistry,
        settings: Settings,
        sample_plan: Plan,
    ) -> None:
        """Test an unreachable learning store does not change any outcome."""
        learning = AsyncMock(spec=LearningStore)
        learning.start_session.side_effect = LearningStoreError("unable to open database file")
        orchestrator = Orchestrator(registry, settings=settings, learning=learning)

        result = await orchestrator.execute_plan(sample_plan)

        assert result.outcomes() == {
            "A": TaskOutcome.SUCCESS,
            "B": TaskOutcome.FAILED,
            "C": TaskOutcome.SKIPPED,
        }
        assert not result.learning_available
        assert result.session_id is None
        learning.record_execution.assert_not_called()

    @pytest.mark.asyncio
    async def test_learning_disabled(self, registry: AgentRegistry, settings: Settings, sample_plan: Plan) -> None:
        """Test runs work with learning switched off."""
        orchestrator = Orchestrator(
            registry,
            settings=settings.model_copy(update={"learning_enabled": False}),
        )

        result = await orchestrator.execute_plan(sample_plan)

        assert orchestrator.learning is None
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_run_numbers_increase(self, orchestrator: Orchestrator, sample_plan: Plan) -> None:
        """Test each run of a plan gets the next run number."""
        first = await orchestrator.execute_plan(sample_plan)
        second = await orchestrator.execute_plan(sample_plan)

        assert (first.run_number, second.run_number) == (1, 2)

    @pytest.mark.asyncio
    async def test_agent_substituted_on_third_attempt(
        self,
        make_agent,
        settings: Settings,
    ) -> None:
        """Test two compilation failures switch the task to the fallback agent."""
        coder = make_agent([("", "compilation error: undefined: User")])
        fallback = make_agent([("fixed", None)])
        registry = AgentRegistry()
        registry.register("coder", coder)
        registry.register("general-purpose", fallback)
        plan = Plan(identity="plans/model.json", default_agent="coder", tasks=[Task(id="1", prompt="Add User")])
        orchestrator = Orchestrator(registry, settings=settings)

        try:
            result = await orchestrator.execute_plan(plan)
        finally:
            await orchestrator.close()

        task_result = result.task_result("1")
        assert task_result.outcome == TaskOutcome.SUCCESS
        assert task_result.attempts == 3
        assert task_result.agent == "general-purpose"
        assert len(coder.calls) == 2
        assert "compilation_error" in fallback.calls[0].prompt

    @pytest.mark.asyncio
    async def test_run_logger_events(self, registry: AgentRegistry, settings: Settings, sample_plan: Plan) -> None:
        """Test the run logger sees waves, tasks and the summary."""
        sink = MagicMock()
        orchestrator = Orchestrator(
            registry,
            settings=settings.model_copy(update={"learning_enabled": False}),
            run_logger=CompositeRunLogger(sink),
        )

        await orchestrator.execute_plan(sample_plan)

        assert sink.log_wave_start.call_count == 2
        assert sink.log_task_result.call_count == 3
        sink.log_summary.assert_called_once()


@pytest.mark.integration
class TestResume:
    """Tests for resumable re-runs."""

    @pytest.mark.asyncio
    async def test_rerun_skips_completed(
        self,
        make_agent,
        settings: Settings,
        sample_plan: Plan,
    ) -> None:
        """Test a re-run replays only what did not succeed."""
        attempts: list[str] = []
        fixed = {"B": False}

        def handler(task: Task) -> tuple[str, str | None]:
            attempts.append(task.key)
            if task.id == "B" and not fixed["B"]:
                return "", "UI build exploded"
            return "ok", None

        registry = AgentRegistry()
        registry.register("coder", make_agent(handler=handler))
        orchestrator = Orchestrator(registry, settings=settings)

        try:
            first = await orchestrator.execute_plan(sample_plan)
            fixed["B"] = True
            attempts.clear()
            second = await orchestrator.execute_plan(sample_plan)
        finally:
            await orchestrator.close()

        assert first.failed == 1
        assert second.success
        assert second.resumed == 1
        assert second.task_result("A").resumed
        assert attempts == ["B", "C"]
        assert orchestrator.state_store.load(sample_plan.identity).status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancelled_run_keeps_completed(
        self,
        make_agent,
        settings: Settings,
        sample_plan: Plan,
    ) -> None:
        """Test a cancelled run does not forget earlier successes."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        no_learning = settings.model_copy(update={"learning_enabled": False})
        cancel = asyncio.Event()
        cancel.set()

        first = await Orchestrator(registry, settings=no_learning).execute_plan(sample_plan)
        second = await Orchestrator(registry, settings=no_learning).execute_plan(
            sample_plan, cancel_event=cancel
        )
        agent.calls.clear()
        third = await Orchestrator(registry, settings=no_learning).execute_plan(sample_plan)

        assert first.success
        assert second.resumed == 3
        assert third.resumed == 3
        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_changed_task_reruns(self, make_agent, settings: Settings, sample_plan: Plan) -> None:
        """Test an edited task is not treated as already done."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        no_learning = settings.model_copy(update={"learning_enabled": False})

        await Orchestrator(registry, settings=no_learning).execute_plan(sample_plan)
        sample_plan.get_task("A").prompt = "Build the API, with auth"
        agent.calls.clear()
        result = await Orchestrator(registry, settings=no_learning).execute_plan(sample_plan)

        assert not result.task_result("A").resumed
        assert [t.key for t in agent.calls] == ["A"]


@pytest.mark.integration
class TestCancellation:
    """Tests for run-scoped cancellation."""

    @pytest.mark.asyncio
    async def test_run_timeout_cancels(self, settings: Settings, sample_plan: Plan) -> None:
        """Test the run timeout cancels in-flight and remaining tasks."""

        class HangingAgent:
            async def invoke(self, task: Task) -> tuple[str, str | None]:
                await asyncio.sleep(30)
                return "late", None

        registry = AgentRegistry()
        registry.register("coder", HangingAgent())
        orchestrator = Orchestrator(
            registry,
            settings=settings.model_copy(update={"run_timeout": 0.1, "task_timeout": 30.0}),
        )

        try:
            result = await asyncio.wait_for(orchestrator.execute_plan(sample_plan), timeout=10)
        finally:
            await orchestrator.close()

        assert result.cancelled
        assert result.cancelled_count == 3
        assert orchestrator.state_store.load(sample_plan.identity).status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_external_cancel(self, orchestrator: Orchestrator, sample_plan: Plan) -> None:
        """Test an already-set cancel event runs nothing."""
        cancel = asyncio.Event()
        cancel.set()

        result = await orchestrator.execute_plan(sample_plan, cancel_event=cancel)

        assert result.cancelled
        assert set(result.outcomes().values()) == {TaskOutcome.CANCELLED}


@pytest.mark.integration
class TestPlanning:
    """Tests for structural validation and dry runs."""

    @pytest.mark.asyncio
    async def test_cycle_raises_before_run(self, make_agent, settings: Settings) -> None:
        """Test a cyclic plan is rejected without invoking any agent."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        plan = Plan(tasks=[Task(id="1", depends_on=["2"]), Task(id="2", depends_on=["1"])])

        with pytest.raises(CircularDependencyError):
            await execute_plan(plan, registry, settings=settings)

        assert agent.calls == []

    @pytest.mark.asyncio
    async def test_unresolved_raises(self, orchestrator: Orchestrator) -> None:
        """Test an unknown dependency is rejected."""
        plan = Plan(tasks=[Task(id="1", depends_on=["404"])])

        with pytest.raises(UnresolvedDependencyError):
            await orchestrator.execute_plan(plan)

    @pytest.mark.asyncio
    async def test_dry_run(self, orchestrator: Orchestrator, sample_plan: Plan) -> None:
        """Test a dry run reports waves without invoking agents."""
        sample_plan.tasks[0].files = ["api.py"]
        sample_plan.tasks[1].files = ["api.py"]
        sample_plan.tasks[2].agent = "designer"

        preview = await orchestrator.dry_run(sample_plan)

        assert preview["total_waves"] == 2
        assert [t["key"] for t in preview["waves"][0]["tasks"]] == ["A", "B"]
        assert preview["file_conflicts"][0]["task_keys"] == ["A", "B"]
        assert preview["missing_agents"] == ["designer"]
        assert preview["critical_path"][-1] == "C"
        registry_agent = orchestrator.registry.get("coder")
        assert registry_agent.calls == []

    @pytest.mark.asyncio
    async def test_merged_plans(self, make_agent, settings: Settings) -> None:
        """Test tasks from two plan files run with cross-file dependencies."""
        agent = make_agent()
        registry = AgentRegistry()
        registry.register("coder", agent)
        plan = merge_plans(
            Plan(identity="backend.json", tasks=[Task(id="1"), Task(id="2", depends_on=["1"])]),
            Plan(
                identity="frontend.json",
                tasks=[Task(id="1", depends_on=[TaskRef(source="backend.json", id="2")])],
            ),
        )

        result = await execute_plan(
            plan,
            registry,
            settings=settings.model_copy(update={"learning_enabled": False}),
        )

        assert result.success
        assert [t.key for t in agent.calls] == ["backend.json#1", "backend.json#2", "frontend.json#1"]
