"""Task execution - agents, QC review, pattern classification, and wave dispatch."""

from maestro.execution.agents import (
    AgentCapability,
    AgentRegistry,
    CallableAgent,
    SubprocessAgent,
)
from maestro.execution.executor import WaveExecutor
from maestro.execution.hooks import ExecutionContext, HookRunner
from maestro.execution.locks import FileLockManager
from maestro.execution.patterns import (
    PATTERN_CATEGORIES,
    AgentSemanticClassifier,
    PatternClassifier,
    PatternMatch,
    match_patterns,
)
from maestro.execution.quality import (
    AgentReviewer,
    QCResponse,
    QualityController,
    parse_qc_response,
)
from maestro.execution.results import (
    QCVerdict,
    RunResult,
    TaskOutcome,
    TaskResult,
    WaveResult,
)
from maestro.execution.task_executor import TaskExecutor

__all__ = [
    # Agents
    "AgentCapability",
    "AgentRegistry",
    "CallableAgent",
    "SubprocessAgent",
    # Lifecycle
    "ExecutionContext",
    "HookRunner",
    "TaskExecutor",
    "WaveExecutor",
    "FileLockManager",
    # Quality control
    "AgentReviewer",
    "QCResponse",
    "QualityController",
    "parse_qc_response",
    # Patterns
    "PATTERN_CATEGORIES",
    "AgentSemanticClassifier",
    "PatternClassifier",
    "PatternMatch",
    "match_patterns",
    # Results
    "QCVerdict",
    "RunResult",
    "TaskOutcome",
    "TaskResult",
    "WaveResult",
]
