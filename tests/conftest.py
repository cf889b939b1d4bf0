"""Pytest configuration and shared fixtures."""

import os
from collections.abc import AsyncGenerator, Callable, Generator
from pathlib import Path

import pytest
import pytest_asyncio

# Set test environment
os.environ.setdefault("MAESTRO_LOG_LEVEL", "DEBUG")
os.environ.setdefault("MAESTRO_LOG_TO_FILE", "false")

from maestro.core.config import Settings, clear_settings_cache  # noqa: E402
from maestro.knowledge.store import LearningStore  # noqa: E402
from maestro.planning.models import Plan, Task  # noqa: E402


class ScriptedAgent:
    """Agent returning scripted (output, error) pairs, one per call.

    The last response repeats once the script runs out. Every invoked task is
    kept so tests can inspect prompts and agents.
    """

    def __init__(
        self,
        responses: list[tuple[str, str | None]] | None = None,
        handler: Callable[[Task], tuple[str, str | None]] | None = None,
    ) -> None:
        self.responses = list(responses or [("done", None)])
        self.handler = handler
        self.calls: list[Task] = []

    async def invoke(self, task: Task) -> tuple[str, str | None]:
        self.calls.append(task)
        if self.handler is not None:
            return self.handler(task)
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]


class ScriptedReviewer:
    """Reviewer returning scripted raw responses, one per call."""

    def __init__(self, responses: list[str]) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str | None]] = []

    async def review(self, task: Task, output: str, reminder: str | None = None) -> str:
        self.calls.append((task.key, reminder))
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]


@pytest.fixture
def make_agent() -> type[ScriptedAgent]:
    """Factory for scripted agents."""
    return ScriptedAgent


@pytest.fixture
def make_reviewer() -> type[ScriptedReviewer]:
    """Factory for scripted QC reviewers."""
    return ScriptedReviewer


@pytest.fixture
def mock_settings() -> Generator:
    """Clear cached settings around a test."""
    clear_settings_cache()

    yield

    clear_settings_cache()


@pytest.fixture
def learning_db_url(tmp_path: Path) -> str:
    """Async SQLite URL in a per-test directory."""
    return f"sqlite+aiosqlite:///{tmp_path / 'learning.db'}"


@pytest.fixture
def settings(tmp_path: Path, learning_db_url: str) -> Settings:
    """Settings isolated to a per-test directory."""
    return Settings(
        state_dir=str(tmp_path / ".maestro"),
        learning_db_url=learning_db_url,
        log_to_file=False,
        max_concurrency=4,
        max_retries=2,
        task_timeout=5.0,
        qc_timeout=5.0,
        learning_timeout=10.0,
        run_timeout=None,
    )


@pytest_asyncio.fixture
async def learning_store(learning_db_url: str) -> AsyncGenerator[LearningStore, None]:
    """Open learning store backed by a temporary SQLite database."""
    store = LearningStore(learning_db_url)
    await store.open()

    yield store

    await store.close()


@pytest.fixture
def sample_tasks() -> list[Task]:
    """A and B are independent; C needs both."""
    return [
        Task(id="A", name="Build API", prompt="Build the API"),
        Task(id="B", name="Build UI", prompt="Build the UI"),
        Task(id="C", name="Integrate", prompt="Wire API and UI", depends_on=["A", "B"]),
    ]


@pytest.fixture
def sample_plan(sample_tasks: list[Task]) -> Plan:
    return Plan(identity="plans/feature.json", default_agent="coder", tasks=sample_tasks)


@pytest.fixture
def numbered_tasks() -> list[Task]:
    """Sub-numbered tasks in scrambled input order."""
    return [
        Task(id="10", name="Ten", depends_on=["2"]),
        Task(id="2.10", name="Two-ten", depends_on=["1"]),
        Task(id="2", name="Two", depends_on=["1"]),
        Task(id="2.1", name="Two-one", depends_on=["1"]),
        Task(id="1", name="One"),
        Task(id="setup", name="Setup"),
    ]


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
