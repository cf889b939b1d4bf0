"""Exception hierarchy for Maestro.

Structural errors (dependency resolution) are raised before a run starts.
Per-task errors are contained to the task that raised them and its dependents.
Learning-subsystem errors never cross into the task-result contract.
"""


class MaestroError(Exception):
    """Base exception for Maestro errors."""

    pass


# =============================================================================
# PLAN-LOAD ERRORS
# =============================================================================


class PlanError(MaestroError):
    """The plan is structurally invalid and cannot be executed."""

    pass


class DuplicateTaskError(PlanError):
    """Two tasks share the same (source, id) key."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Duplicate task key: {key}")


class UnresolvedDependencyError(PlanError):
    """A dependency reference does not name any task in the plan."""

    def __init__(self, task: str, reference: str) -> None:
        self.task = task
        self.reference = reference
        super().__init__(f"Task {task} depends on unknown task {reference}")


class CircularDependencyError(PlanError):
    """The dependency graph contains at least one cycle."""

    def __init__(self, members: list[str], cycle: list[str] | None = None) -> None:
        self.members = members
        self.cycle = cycle or []
        if self.cycle:
            detail = " -> ".join(self.cycle)
        else:
            detail = ", ".join(members)
        super().__init__(f"Circular dependency detected: {detail}")


# =============================================================================
# TASK ERRORS
# =============================================================================


class TaskError(MaestroError):
    """Error scoped to a single task."""

    def __init__(self, task: str, message: str) -> None:
        self.task = task
        super().__init__(message)


class LockConflictError(TaskError):
    """A file the task touches is already locked by another task or process."""

    def __init__(self, task: str, path: str) -> None:
        self.path = path
        super().__init__(task, f"Task {task} could not lock {path}: already held")


class InvocationError(TaskError):
    """The agent capability failed to run (transport, process, or timeout)."""

    def __init__(self, task: str, message: str, output: str = "") -> None:
        self.output = output
        super().__init__(task, message)


class AgentNotFoundError(InvocationError):
    """No agent capability is registered under the requested name."""

    def __init__(self, task: str, agent: str) -> None:
        self.agent = agent
        super().__init__(task, f"Agent {agent!r} is not registered")


class RunCancelledError(MaestroError):
    """The run-scoped cancellation signal was observed."""

    pass


# =============================================================================
# INTERNAL ERRORS
# =============================================================================


class QCParseError(MaestroError):
    """A QC reviewer response could not be parsed into a verdict."""

    pass


class LearningStoreError(MaestroError):
    """The learning store could not be read or written."""

    pass
