"""
Agent capabilities and the registry that names them.

An agent is anything with ``async invoke(task) -> (output, error)``. The task
passed in carries the final prompt for this attempt; a non-None error means
the invocation failed.
"""

import asyncio
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger

from maestro.core.errors import AgentNotFoundError
from maestro.planning.models import Task

AgentResponse = tuple[str, str | None]


@runtime_checkable
class AgentCapability(Protocol):
    """Contract every agent implementation satisfies."""

    async def invoke(self, task: Task) -> AgentResponse: ...


class CallableAgent:
    """Adapt a plain coroutine function into an agent capability."""

    def __init__(self, fn: Callable[[Task], Awaitable[AgentResponse]]) -> None:
        self._fn = fn

    async def invoke(self, task: Task) -> AgentResponse:
        return await self._fn(task)


# =============================================================================
# REGISTRY
# =============================================================================


class AgentRegistry:
    """
    Name -> agent capability lookup.

    Example:
        >>> registry = AgentRegistry()
        >>> registry.register("python-pro", SubprocessAgent(["claude", "--print"]))
        >>> "python-pro" in registry
        True
    """

    def __init__(self, default: str | None = None) -> None:
        self._agents: dict[str, AgentCapability] = {}
        self.default = default

    def register(self, name: str, agent: AgentCapability) -> None:
        """Register (or replace) an agent under a name."""
        if not isinstance(agent, AgentCapability):
            raise TypeError(f"{type(agent).__name__} does not implement invoke(task)")
        self._agents[name] = agent
        if self.default is None:
            self.default = name
        logger.debug(f"Registered agent: {name}")

    def unregister(self, name: str) -> bool:
        """Remove an agent. Returns False if it was not registered."""
        removed = self._agents.pop(name, None) is not None
        if removed and self.default == name:
            self.default = next(iter(self._agents), None)
        return removed

    def get(self, name: str | None) -> AgentCapability | None:
        """Get an agent by name (the default agent when name is None)."""
        return self._agents.get(name or self.default or "")

    def require(self, name: str | None, task_key: str) -> AgentCapability:
        """
        Get an agent or fail the task.

        Raises:
            AgentNotFoundError: If no agent is registered under the name.
        """
        agent = self.get(name)
        if agent is None:
            raise AgentNotFoundError(task_key, name or "<default>")
        return agent

    def resolve_name(self, name: str | None) -> str | None:
        """Name that ``get(name)`` would use."""
        return name or self.default

    def names(self) -> list[str]:
        return list(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)


# =============================================================================
# SUBPROCESS AGENT
# =============================================================================


class SubprocessAgent:
    """
    Run a CLI command per task with the prompt on stdin.

    ``{agent}`` in any argument is replaced by the task's agent name. The
    process is killed if the call times out or is cancelled.

    Example:
        >>> agent = SubprocessAgent(
        ...     ["claude", "--print", "--agents", "{agent}"],
        ...     timeout=900,
        ...     cwd="./workspace",
        ... )
        >>> output, error = await agent.invoke(task)
    """

    def __init__(
        self,
        command: list[str],
        timeout: float | None = None,
        cwd: str | Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """
        Initialize subprocess agent.

        Args:
            command: Executable and arguments.
            timeout: Seconds before the process is killed (None for no limit).
            cwd: Working directory for the process.
            env: Extra environment variables.
        """
        if not command:
            raise ValueError("command must not be empty")
        self.command = command
        self.timeout = timeout
        self.cwd = str(cwd) if cwd else None
        self.env = env or {}

    def build_args(self, task: Task) -> list[str]:
        agent = task.agent or ""
        return [arg.replace("{agent}", agent) for arg in self.command]

    async def invoke(self, task: Task) -> AgentResponse:
        args = self.build_args(task)

        env = os.environ.copy()
        env.update(self.env)
        env["MAESTRO_TASK_KEY"] = task.key

        logger.debug(f"Spawning for task {task.key}: {' '.join(args[:3])}...")

        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=self.cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(task.prompt.encode("utf-8")),
                timeout=self.timeout,
            )
        except (TimeoutError, asyncio.CancelledError):
            await self._kill(process)
            raise

        output = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            return output, f"Process exited with code {process.returncode}: {detail}"

        return output, None

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            logger.warning(f"Process {process.pid} did not exit after kill")
        logger.info(f"Killed agent process {process.pid}")
