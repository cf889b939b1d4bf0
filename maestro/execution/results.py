"""Result models for task, wave, and run execution."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# ENUMS
# =============================================================================


class TaskOutcome(str, Enum):
    """Terminal outcome of a task within one run."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class QCVerdict(str, Enum):
    """Quality-control verdict. GREEN and YELLOW pass, RED fails."""

    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"

    @property
    def passed(self) -> bool:
        return self is not QCVerdict.RED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# TASK RESULT
# =============================================================================


class TaskResult(BaseModel):
    """Result of one task, after all of its attempts."""

    model_config = ConfigDict(frozen=False)

    task_key: str
    task_name: str = ""
    outcome: TaskOutcome
    agent: str | None = None
    attempts: int = 0
    qc_verdict: QCVerdict | None = None
    qc_feedback: str | None = None
    output: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0
    files_modified: list[str] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=list)
    resumed: bool = False
    wave_number: int | None = None
    completed_at: datetime = Field(default_factory=_utcnow)

    @property
    def success(self) -> bool:
        return self.outcome == TaskOutcome.SUCCESS

    @classmethod
    def skipped(cls, task_key: str, reason: str, task_name: str = "") -> "TaskResult":
        """Result for a task that was never dispatched."""
        return cls(
            task_key=task_key,
            task_name=task_name,
            outcome=TaskOutcome.SKIPPED,
            error=reason,
        )

    @classmethod
    def cancelled(cls, task_key: str, reason: str = "Run cancelled", task_name: str = "") -> "TaskResult":
        """Result for a task stopped by run cancellation."""
        return cls(
            task_key=task_key,
            task_name=task_name,
            outcome=TaskOutcome.CANCELLED,
            error=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return self.model_dump(mode="json")


# =============================================================================
# WAVE AND RUN RESULTS
# =============================================================================


class WaveResult(BaseModel):
    """Results of every task in one wave."""

    model_config = ConfigDict(frozen=False)

    wave_number: int
    results: list[TaskResult] = Field(default_factory=list)
    duration_seconds: float = 0.0

    def _keys(self, outcome: TaskOutcome) -> list[str]:
        return [r.task_key for r in self.results if r.outcome == outcome]

    @property
    def completed_tasks(self) -> list[str]:
        return self._keys(TaskOutcome.SUCCESS)

    @property
    def failed_tasks(self) -> list[str]:
        return self._keys(TaskOutcome.FAILED)

    @property
    def skipped_tasks(self) -> list[str]:
        return self._keys(TaskOutcome.SKIPPED)

    @property
    def cancelled_tasks(self) -> list[str]:
        return self._keys(TaskOutcome.CANCELLED)

    @property
    def success_rate(self) -> float:
        if not self.results:
            return 0.0
        return len(self.completed_tasks) / len(self.results)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "wave_number": self.wave_number,
            "results": [r.to_dict() for r in self.results],
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "skipped_tasks": self.skipped_tasks,
            "cancelled_tasks": self.cancelled_tasks,
            "success_rate": self.success_rate,
            "duration_seconds": self.duration_seconds,
        }


class RunResult(BaseModel):
    """
    Aggregate result of executing a plan.

    Example:
        >>> result = await orchestrator.execute_plan(plan)
        >>> result.succeeded, result.failed, result.skipped
        (1, 1, 1)
    """

    model_config = ConfigDict(frozen=False)

    plan_identity: str
    session_id: str | None = None
    run_number: int | None = None
    waves: list[WaveResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    duration_seconds: float = 0.0
    cancelled: bool = False
    learning_available: bool = False

    @property
    def results(self) -> list[TaskResult]:
        """Every task result in wave order."""
        return [r for wave in self.waves for r in wave.results]

    def task_result(self, task_key: str) -> TaskResult | None:
        for result in self.results:
            if result.task_key == task_key:
                return result
        return None

    def outcomes(self) -> dict[str, TaskOutcome]:
        """Map of task key -> outcome."""
        return {r.task_key: r.outcome for r in self.results}

    def _count(self, outcome: TaskOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def total_tasks(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(TaskOutcome.SUCCESS)

    @property
    def failed(self) -> int:
        return self._count(TaskOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(TaskOutcome.SKIPPED)

    @property
    def cancelled_count(self) -> int:
        return self._count(TaskOutcome.CANCELLED)

    @property
    def resumed(self) -> int:
        return sum(1 for r in self.results if r.resumed)

    @property
    def success(self) -> bool:
        """True when every task succeeded."""
        return self.total_tasks > 0 and self.succeeded == self.total_tasks

    def summary(self) -> dict[str, Any]:
        """Counts suitable for a one-line report."""
        return {
            "total": self.total_tasks,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled_count,
            "resumed": self.resumed,
            "waves": len(self.waves),
            "duration_seconds": self.duration_seconds,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "plan_identity": self.plan_identity,
            "session_id": self.session_id,
            "run_number": self.run_number,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
            "learning_available": self.learning_available,
            "summary": self.summary(),
            "waves": [w.to_dict() for w in self.waves],
        }
