"""
Maestro - wave-based task orchestration for autonomous agents.

Resolves task plans into dependency waves, runs each task through a
quality-controlled lifecycle, and learns from past failures.
"""

__version__ = "0.1.0"

from maestro.core.orchestrator import Orchestrator
from maestro.planning.models import Plan, Task, merge_plans

__all__ = ["Orchestrator", "Plan", "Task", "merge_plans", "__version__"]
