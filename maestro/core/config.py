"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MAESTRO_",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_dir: str = Field(
        default="logs",
        description="Directory for rotating log files",
    )
    log_to_file: bool = Field(
        default=True,
        description="Write a rotating log file in addition to stderr",
    )

    # Execution
    max_concurrency: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of tasks running at once within a wave",
    )
    task_timeout: float = Field(
        default=1800.0,
        gt=0,
        description="Per-task agent invocation timeout in seconds",
    )
    run_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Global run timeout in seconds (None disables it)",
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Additional attempts after a failing verdict or invocation error",
    )
    qc_enabled: bool = Field(
        default=True,
        description="Run a QC review on every task output",
    )
    qc_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Timeout for a single QC review request in seconds",
    )
    skip_completed: bool = Field(
        default=True,
        description="Skip tasks that succeeded in a prior run of the same plan",
    )
    state_dir: str = Field(
        default=".maestro",
        description="Directory for resumable run state and lock files",
    )

    # Learning
    learning_enabled: bool = Field(
        default=True,
        description="Enable the adaptive learning feedback loop",
    )
    learning_db_url: str = Field(
        default="sqlite+aiosqlite:///.maestro/learning.db",
        description="Async SQLAlchemy URL for the learning store",
    )
    learning_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single learning-store operation in seconds",
    )
    history_cap: int = Field(
        default=100,
        ge=1,
        description="Maximum execution records retained per task identity",
    )
    min_failures_before_adapt: int = Field(
        default=2,
        ge=1,
        description="Consecutive same-category failures before suggesting another agent",
    )
    auto_adapt_agent: bool = Field(
        default=True,
        description="Substitute the suggested agent when one is available",
    )
    fallback_agent: str = Field(
        default="general-purpose",
        description="Agent suggested when history has no better alternative",
    )
    min_successes_for_alternative: int = Field(
        default=5,
        ge=1,
        description="Successful runs an agent needs before it is suggested",
    )

    # Agents
    agent_command: str = Field(
        default="claude --print --agent {agent}",
        description="Command run by the CLI for each agent; {agent} is replaced by the agent name",
    )
    qc_agent: str = Field(
        default="quality-control",
        description="Agent that performs QC reviews",
    )

    # Semantic classification
    semantic_classifier_enabled: bool = Field(
        default=False,
        description="Consult the secondary semantic failure classifier",
    )
    semantic_confidence_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for a semantic classification to be accepted",
    )
    semantic_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the semantic classifier in seconds",
    )

    @property
    def state_path(self) -> Path:
        """Get the state directory as a Path."""
        return Path(self.state_dir)

    @property
    def lock_dir(self) -> Path:
        """Get the directory holding per-file lock files."""
        return self.state_path / "locks"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.max_concurrency
        10
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
