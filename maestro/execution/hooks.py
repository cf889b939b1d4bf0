"""
Task lifecycle hooks.

Hooks are plain async callables over a mutable ExecutionContext. Each hook
runs independently: an exception is logged and the next hook still runs.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from maestro.execution.patterns import PatternMatch
from maestro.execution.quality import QCResponse
from maestro.knowledge.schemas import FailureAnalysis
from maestro.planning.models import Task


@dataclass
class ExecutionContext:
    """Mutable state of one task attempt, shared with hooks."""

    task: Task
    plan_identity: str
    attempt: int
    agent: str | None
    prompt: str
    original_prompt: str
    output: str = ""
    error: str | None = None
    qc: QCResponse | None = None
    patterns: PatternMatch | None = None
    analysis: FailureAnalysis | None = None
    duration_seconds: float = 0.0
    success: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def task_key(self) -> str:
        return self.task.key


Hook = Callable[[ExecutionContext], Awaitable[None]]


class HookRunner:
    """Ordered pre-task and post-task hook lists."""

    def __init__(
        self,
        pre_task: list[Hook] | None = None,
        post_task: list[Hook] | None = None,
    ) -> None:
        self.pre_task: list[Hook] = list(pre_task or [])
        self.post_task: list[Hook] = list(post_task or [])

    def add_pre_task(self, hook: Hook) -> None:
        self.pre_task.append(hook)

    def add_post_task(self, hook: Hook) -> None:
        self.post_task.append(hook)

    async def run_pre_task(self, ctx: ExecutionContext) -> None:
        await self._run("pre-task", self.pre_task, ctx)

    async def run_post_task(self, ctx: ExecutionContext) -> None:
        await self._run("post-task", self.post_task, ctx)

    @staticmethod
    async def _run(stage: str, hooks: list[Hook], ctx: ExecutionContext) -> None:
        for hook in hooks:
            try:
                await hook(ctx)
            except Exception as e:
                name = getattr(hook, "__name__", type(hook).__name__)
                logger.warning(f"{stage} hook {name} failed for {ctx.task_key}: {e}")
