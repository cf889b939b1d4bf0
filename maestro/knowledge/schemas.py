"""Pydantic views of learning data.

The persisted session document is additive-only: readers ignore fields they
do not know, so documents written by newer versions stay readable.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionRecord(BaseModel):
    """One attempt of one task, as recorded by the post-task hook."""

    model_config = ConfigDict(frozen=False, extra="ignore")

    task_key: str
    task_name: str = ""
    agent: str | None = None
    outcome: str
    success: bool
    attempt: int = 1
    duration_seconds: float = 0.0
    qc_verdict: str | None = None
    qc_feedback: str | None = None
    output: str | None = None
    error: str | None = None
    patterns: list[str] = Field(default_factory=list)
    pattern_keywords: dict[str, list[str]] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)


class LearningSession(BaseModel):
    """In-memory view of one run's recorded history."""

    model_config = ConfigDict(frozen=False)

    session_id: str
    plan_identity: str
    run_number: int
    created_at: datetime = Field(default_factory=_utcnow)
    records: list[ExecutionRecord] = Field(default_factory=list)


class LearningSessionDocument(BaseModel):
    """Durable session document: {session_id, plan_identity, run_number, created_at, records[]}."""

    model_config = ConfigDict(extra="ignore")

    session_id: str
    plan_identity: str
    run_number: int
    created_at: datetime
    records: list[ExecutionRecord] = Field(default_factory=list)


class PatternStats(BaseModel):
    """Detection statistics for one failure category."""

    category: str
    detection_count: int = 0
    last_detected: datetime | None = None
    keywords: list[str] = Field(default_factory=list)

    def add_keywords(self, keywords: list[str]) -> None:
        for keyword in keywords:
            if keyword not in self.keywords:
                self.keywords.append(keyword)


class AgentStats(BaseModel):
    """Historical success statistics for one agent."""

    agent: str
    total: int = 0
    successes: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.total if self.total else 0.0


class LearningSummary(BaseModel):
    """Aggregate statistics computed on demand from stored records."""

    total_executions: int = 0
    failed_executions: int = 0
    total_patterns_found: int = 0
    patterns: dict[str, PatternStats] = Field(default_factory=dict)
    agents: dict[str, AgentStats] = Field(default_factory=dict)

    @property
    def detection_rate(self) -> float:
        """Patterns found per recorded execution."""
        if self.total_executions == 0:
            return 0.0
        return self.total_patterns_found / self.total_executions

    def frequency(self) -> dict[str, int]:
        """Per-category detection counts."""
        return {name: stats.detection_count for name, stats in self.patterns.items()}


class FailureAnalysis(BaseModel):
    """Failure history summary used to adapt the next attempt."""

    total_attempts: int = 0
    failed_attempts: int = 0
    tried_agents: list[str] = Field(default_factory=list)
    common_patterns: list[str] = Field(default_factory=list)
    streak_category: str | None = None
    streak_length: int = 0
    should_try_different_agent: bool = False
    suggested_agent: str | None = None
    suggested_approach: str = ""

    @property
    def has_failures(self) -> bool:
        return self.failed_attempts > 0
