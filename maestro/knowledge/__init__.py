"""Learning feedback loop - execution history, persistence, and failure analysis."""

from maestro.knowledge.analysis import (
    analyze_failures,
    format_learning_context,
    summarize,
)
from maestro.knowledge.database import LearningDatabase
from maestro.knowledge.models import (
    Base,
    ExecutionRecordRow,
    LearningSessionRow,
    RunCounter,
)
from maestro.knowledge.schemas import (
    AgentStats,
    ExecutionRecord,
    FailureAnalysis,
    LearningSession,
    LearningSessionDocument,
    LearningSummary,
    PatternStats,
)
from maestro.knowledge.store import LearningStore

__all__ = [
    # Store
    "LearningDatabase",
    "LearningStore",
    # ORM
    "Base",
    "ExecutionRecordRow",
    "LearningSessionRow",
    "RunCounter",
    # Schemas
    "AgentStats",
    "ExecutionRecord",
    "FailureAnalysis",
    "LearningSession",
    "LearningSessionDocument",
    "LearningSummary",
    "PatternStats",
    # Analysis
    "analyze_failures",
    "format_learning_context",
    "summarize",
]
