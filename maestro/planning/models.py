"""Pydantic models for plans, tasks, and execution waves.

A plan arrives here already parsed: the core never reads plan-file syntax.
Tasks from several plan files can be merged into one plan, so every task is
addressed by a two-part key, its source (plan-file identity) plus its local id.
"""

import hashlib
import json
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from maestro.core.errors import DuplicateTaskError

# =============================================================================
# ENUMS
# =============================================================================


class TaskStatus(str, Enum):
    """Execution status of a task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if the status is final for this run."""
        return self not in (TaskStatus.PENDING, TaskStatus.RUNNING)


# =============================================================================
# TASK REFERENCES
# =============================================================================


class TaskRef(BaseModel):
    """Global address of a task: source identity plus local id.

    Example:
        >>> TaskRef(source="plans/backend.md", id="2.1").key
        'plans/backend.md#2.1'
    """

    model_config = ConfigDict(frozen=True)

    source: str = Field(default="", description="Plan-file identity")
    id: str = Field(..., min_length=1, description="Task id local to its source")

    @property
    def key(self) -> str:
        """Canonical string form used as the graph node name."""
        return f"{self.source}#{self.id}" if self.source else self.id

    def __str__(self) -> str:
        return self.key


_NUMERIC = re.compile(r"^\d+$")


def task_sort_key(task_id: str) -> tuple:
    """Sort key for task ids: numeric id first, then sub-id.

    "2" < "2.1" < "2.2" < "2.10" < "10". Ids whose leading part is not a
    number sort after all numeric ids, lexicographically.

    Args:
        task_id: Local task identifier.

    Returns:
        Tuple suitable for ``sorted``.
    """
    head, _, tail = task_id.partition(".")
    head = head.strip()
    if not _NUMERIC.match(head):
        return (1, 0, task_id, ())

    parts: list[tuple[int, int, str]] = []
    for part in tail.split(".") if tail else []:
        if _NUMERIC.match(part):
            parts.append((0, int(part), ""))
        else:
            parts.append((1, 0, part))
    return (0, int(head), "", tuple(parts))


# =============================================================================
# TASK
# =============================================================================


class Task(BaseModel):
    """A single unit of work executed by an agent capability.

    Example:
        >>> task = Task(
        ...     id="2.1",
        ...     name="Add user model",
        ...     agent="python-pro",
        ...     prompt="Create the User model...",
        ...     depends_on=["1", {"source": "infra.md", "id": "3"}],
        ...     files=["app/models/user.py"],
        ... )
    """

    model_config = ConfigDict(frozen=False)

    id: str = Field(..., min_length=1, description="Task id, may be sub-numbered")
    name: str = Field(default="", description="Task title")
    agent: str | None = Field(
        default=None,
        description="Agent capability name (plan default when unset)",
    )
    prompt: str = Field(default="", description="Full task prompt")
    depends_on: list[str | TaskRef] = Field(
        default_factory=list,
        description="Local ids or cross-source references",
    )
    source: str = Field(default="", description="Plan-file identity")
    files: list[str] = Field(
        default_factory=list,
        description="File paths this task touches",
    )
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    success_criteria: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def strip_id(cls, v: str) -> str:
        """Normalise surrounding whitespace in ids."""
        return v.strip()

    @property
    def ref(self) -> TaskRef:
        """Global reference to this task."""
        return TaskRef(source=self.source, id=self.id)

    @property
    def key(self) -> str:
        """Canonical graph key."""
        return self.ref.key

    @property
    def display_name(self) -> str:
        """Human-readable label for logs."""
        return f"{self.key} ({self.name})" if self.name else self.key

    def fingerprint(self) -> str:
        """Hash of everything that defines what the task does.

        Used to decide whether a success recorded in a previous run still
        applies to this plan.
        """
        payload = {
            "id": self.id,
            "source": self.source,
            "agent": self.agent,
            "prompt": self.prompt,
            "depends_on": [
                d.key if isinstance(d, TaskRef) else d for d in self.depends_on
            ],
            "files": sorted(self.files),
            "success_criteria": self.success_criteria,
        }
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()


# =============================================================================
# WAVES AND PLANS
# =============================================================================


class Wave(BaseModel):
    """A set of mutually independent tasks that may run concurrently."""

    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=0, description="Wave index (0-based)")
    task_keys: list[str] = Field(default_factory=list)

    @property
    def name(self) -> str:
        return f"Wave {self.number + 1}"

    def __len__(self) -> int:
        return len(self.task_keys)


class Plan(BaseModel):
    """Merged collection of tasks plus their derived waves.

    Example:
        >>> plan = Plan(identity="plans/feature.md", tasks=[...])
        >>> plan.get_task("3").name
        'Wire the API'
    """

    model_config = ConfigDict(frozen=False)

    identity: str = Field(default="", description="Plan identity for learning and resume")
    name: str = Field(default="", description="Human-readable plan name")
    default_agent: str | None = Field(default=None)
    tasks: list[Task] = Field(default_factory=list)
    waves: list[Wave] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        if not self.identity:
            self.identity = self.name or "plan"

    def task_map(self) -> dict[str, Task]:
        """Map of task key -> Task.

        Raises:
            DuplicateTaskError: If two tasks share a key.
        """
        mapping: dict[str, Task] = {}
        for task in self.tasks:
            if task.key in mapping:
                raise DuplicateTaskError(task.key)
            mapping[task.key] = task
        return mapping

    def get_task(self, key: str) -> Task | None:
        """Get a task by key."""
        for task in self.tasks:
            if task.key == key:
                return task
        return None

    def agent_for(self, task: Task) -> str | None:
        """Resolve the effective agent for a task."""
        return task.agent or self.default_agent

    @property
    def total_waves(self) -> int:
        return len(self.waves)


# =============================================================================
# DEPENDENCY GRAPH
# =============================================================================


class DependencyGraph(BaseModel):
    """Graph representation of task dependencies.

    Edges point from a task to the tasks it depends on. All references are
    already resolved to canonical task keys.

    Example:
        >>> graph.get_transitive_dependents("1")
        ['3', '4']
    """

    model_config = ConfigDict(frozen=False)

    nodes: dict[str, Task] = Field(
        default_factory=dict,
        description="Task key -> Task mapping",
    )
    edges: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Task key -> list of dependency keys",
    )
    waves: list[Wave] = Field(
        default_factory=list,
        description="Execution waves in order",
    )

    def get_task(self, key: str) -> Task | None:
        return self.nodes.get(key)

    def get_dependents(self, key: str) -> list[str]:
        """Get tasks that directly depend on this task."""
        return [tid for tid, deps in self.edges.items() if key in deps]

    def get_transitive_dependents(self, key: str) -> list[str]:
        """Get every task that depends on this task, directly or not.

        Returns:
            Dependent keys in discovery order.
        """
        found: list[str] = []
        seen: set[str] = {key}
        frontier = [key]
        while frontier:
            current = frontier.pop(0)
            for dependent in self.get_dependents(current):
                if dependent not in seen:
                    seen.add(dependent)
                    found.append(dependent)
                    frontier.append(dependent)
        return found

    def get_wave_tasks(self, wave_number: int) -> list[Task]:
        """Get tasks in a specific wave, in wave order."""
        if wave_number >= len(self.waves):
            return []
        return [
            self.nodes[key] for key in self.waves[wave_number].task_keys
            if key in self.nodes
        ]

    def wave_of(self, key: str) -> int | None:
        """Get the wave index holding a task."""
        for wave in self.waves:
            if key in wave.task_keys:
                return wave.number
        return None

    @property
    def total_waves(self) -> int:
        return len(self.waves)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "edges": self.edges,
            "waves": [w.task_keys for w in self.waves],
            "total_waves": self.total_waves,
        }


# =============================================================================
# MERGING
# =============================================================================


def merge_plans(*plans: Plan, identity: str | None = None) -> Plan:
    """Combine several plans into one, tagging every task with its source.

    Tasks that already carry a source keep it; otherwise the owning plan's
    identity becomes the source. A single plan is validated and returned
    as-is, so its task keys stay plain local ids.

    Args:
        *plans: Plans to merge.
        identity: Identity for the merged plan (defaults to the joined
            identities of the inputs).

    Returns:
        Merged Plan with no waves computed yet.

    Raises:
        ValueError: If no plans are given.
        DuplicateTaskError: If two tasks share a (source, id) key.
    """
    present = [p for p in plans if p is not None]
    if not present:
        raise ValueError("no plans provided")

    if len(present) == 1:
        plan = present[0]
        plan.task_map()
        return plan

    merged = Plan(
        identity=identity or "+".join(p.identity for p in present),
        name="Merged Plan",
    )
    seen: set[str] = set()

    for plan in present:
        for task in plan.tasks:
            copy = task.model_copy(deep=True)
            if not copy.source:
                copy.source = plan.identity
            if copy.agent is None and plan.default_agent:
                copy.agent = plan.default_agent
            if copy.key in seen:
                raise DuplicateTaskError(copy.key)
            seen.add(copy.key)
            merged.tasks.append(copy)

        if merged.default_agent is None and plan.default_agent:
            merged.default_agent = plan.default_agent

    return merged
