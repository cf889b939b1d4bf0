"""Plan models and dependency resolution.

- Plan, Task, and Wave models
- Multi-file plan merging
- Dependency resolution (tasks -> execution waves)
"""

from maestro.planning.dependency_resolver import (
    DependencyResolver,
    FileConflict,
    calculate_waves,
    detect_conflicts,
)
from maestro.planning.models import (
    DependencyGraph,
    Plan,
    Task,
    TaskRef,
    TaskStatus,
    Wave,
    merge_plans,
    task_sort_key,
)

__all__ = [
    # Models
    "DependencyGraph",
    "Plan",
    "Task",
    "TaskRef",
    "TaskStatus",
    "Wave",
    "merge_plans",
    "task_sort_key",
    # Dependency Resolution
    "DependencyResolver",
    "FileConflict",
    "calculate_waves",
    "detect_conflicts",
]
