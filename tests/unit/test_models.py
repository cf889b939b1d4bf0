"""Unit tests for plan and task models."""

import pytest

from maestro.core.errors import DuplicateTaskError
from maestro.planning.models import Plan, Task, TaskRef, TaskStatus, merge_plans


class TestTask:
    """Tests for the Task model."""

    def test_key_without_source(self) -> None:
        """Test a task from a single plan is keyed by its id."""
        assert Task(id=" 3 ").key == "3"

    def test_key_with_source(self) -> None:
        """Test a tagged task is keyed by source and id."""
        task = Task(id="2.1", source="plans/api.json")

        assert task.key == "plans/api.json#2.1"
        assert task.ref == TaskRef(source="plans/api.json", id="2.1")

    def test_depends_on_accepts_refs(self) -> None:
        """Test mixed local ids and cross-source references parse."""
        task = Task.model_validate(
            {"id": "3", "depends_on": ["1", {"source": "infra.json", "id": "2"}]}
        )

        assert task.depends_on[0] == "1"
        assert task.depends_on[1] == TaskRef(source="infra.json", id="2")

    def test_fingerprint_stable(self) -> None:
        """Test identical definitions share a fingerprint."""
        a = Task(id="1", prompt="Do it", files=["b.py", "a.py"])
        b = Task(id="1", prompt="Do it", files=["a.py", "b.py"])

        assert a.fingerprint() == b.fingerprint()

    def test_fingerprint_ignores_status(self) -> None:
        """Test runtime status does not change the fingerprint."""
        task = Task(id="1", prompt="Do it")
        before = task.fingerprint()
        task.status = TaskStatus.SUCCESS

        assert task.fingerprint() == before

    def test_fingerprint_tracks_prompt(self) -> None:
        """Test an edited prompt changes the fingerprint."""
        assert Task(id="1", prompt="v1").fingerprint() != Task(id="1", prompt="v2").fingerprint()

    def test_terminal_status(self) -> None:
        """Test which statuses end a task's run."""
        assert TaskStatus.SKIPPED.is_terminal
        assert not TaskStatus.RUNNING.is_terminal


class TestPlan:
    """Tests for the Plan model."""

    def test_identity_defaults_to_name(self) -> None:
        """Test a plan without identity uses its name."""
        assert Plan(name="Feature").identity == "Feature"

    def test_agent_for(self) -> None:
        """Test task agent overrides the plan default."""
        plan = Plan(default_agent="coder", tasks=[Task(id="1"), Task(id="2", agent="tester")])

        assert plan.agent_for(plan.tasks[0]) == "coder"
        assert plan.agent_for(plan.tasks[1]) == "tester"

    def test_task_map_rejects_duplicates(self) -> None:
        """Test duplicate keys are caught when indexing."""
        plan = Plan(tasks=[Task(id="1"), Task(id="1")])

        with pytest.raises(DuplicateTaskError):
            plan.task_map()


class TestMergePlans:
    """Tests for merging plans from several files."""

    def test_single_plan_unchanged(self, sample_plan: Plan) -> None:
        """Test one plan merges to itself with untagged keys."""
        merged = merge_plans(sample_plan)

        assert merged is sample_plan
        assert [t.key for t in merged.tasks] == ["A", "B", "C"]

    def test_tags_sources(self) -> None:
        """Test merged tasks carry the identity of their plan."""
        merged = merge_plans(
            Plan(identity="a.json", default_agent="coder", tasks=[Task(id="1")]),
            Plan(identity="b.json", tasks=[Task(id="1", agent="tester")]),
        )

        assert merged.identity == "a.json+b.json"
        assert [t.key for t in merged.tasks] == ["a.json#1", "b.json#1"]
        assert merged.tasks[0].agent == "coder"
        assert merged.default_agent == "coder"

    def test_inputs_not_mutated(self) -> None:
        """Test merging copies tasks instead of tagging the originals."""
        first = Plan(identity="a.json", tasks=[Task(id="1")])
        merge_plans(first, Plan(identity="b.json", tasks=[Task(id="2")]))

        assert first.tasks[0].source == ""

    def test_duplicate_across_plans(self) -> None:
        """Test a repeated (source, id) key is rejected."""
        with pytest.raises(DuplicateTaskError):
            merge_plans(
                Plan(identity="a.json", tasks=[Task(id="1")]),
                Plan(identity="b.json", tasks=[Task(id="1", source="a.json")]),
            )

    def test_requires_a_plan(self) -> None:
        """Test merging nothing is an error."""
        with pytest.raises(ValueError):
            merge_plans()
