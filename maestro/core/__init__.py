"""Core orchestration - configuration, errors, run state, and the orchestrator."""

from maestro.core.config import Settings, clear_settings_cache, get_settings
from maestro.core.errors import MaestroError
from maestro.core.orchestrator import Orchestrator, execute_plan

__all__ = [
    "MaestroError",
    "Orchestrator",
    "Settings",
    "clear_settings_cache",
    "execute_plan",
    "get_settings",
]
