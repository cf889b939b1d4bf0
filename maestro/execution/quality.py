"""
Quality-control review of agent output.

The reviewer returns free text that should contain a JSON verdict. Parsing is
tolerant: a malformed response earns exactly one retry with a schema reminder,
then a verdict nested under ``metadata`` is accepted, and finally the review
fails RED with a note. Reviewing never raises.
"""

import asyncio
import json
import re
from typing import Any, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from maestro.core.errors import QCParseError
from maestro.execution.agents import AgentRegistry
from maestro.execution.results import QCVerdict
from maestro.planning.models import Task

SCHEMA_REMINDER = """
IMPORTANT: Your previous response could not be parsed. Respond with ONLY a JSON
object matching this schema, with no surrounding prose:

{
  "verdict": "GREEN" | "YELLOW" | "RED",
  "feedback": "summary of the review",
  "issues": [{"severity": "critical|warning|info", "description": "...", "location": "..."}],
  "recommendations": ["..."],
  "should_retry": true | false,
  "suggested_agent": "agent-name or null"
}
""".strip()


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================


class QCIssue(BaseModel):
    """A single issue raised by the reviewer."""

    model_config = ConfigDict(extra="ignore")

    severity: str = "info"
    description: str = ""
    location: str = ""


class QCResponse(BaseModel):
    """Structured reviewer verdict."""

    model_config = ConfigDict(extra="ignore")

    verdict: QCVerdict
    feedback: str = ""
    issues: list[QCIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    should_retry: bool = False
    suggested_agent: str | None = None

    @field_validator("verdict", mode="before")
    @classmethod
    def normalize_verdict(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def passed(self) -> bool:
        return self.verdict.passed

    def summary(self) -> str:
        """Feedback plus issues as one block of text."""
        lines = [self.feedback] if self.feedback else []
        for issue in self.issues:
            location = f" ({issue.location})" if issue.location else ""
            lines.append(f"[{issue.severity}] {issue.description}{location}")
        return "\n".join(lines)


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def _load_json(text: str) -> Any:
    """Pull a JSON object out of reviewer text.

    Raises:
        QCParseError: If no JSON object can be decoded.
    """
    candidates = [text.strip()]
    candidates.extend(m.strip() for m in _FENCE.findall(text))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise QCParseError("no JSON object found in QC response")


def parse_qc_response(text: str | None) -> QCResponse:
    """
    Parse reviewer text into a QCResponse.

    Raises:
        QCParseError: If the text is empty, not JSON, or fails validation.
    """
    if not text or not text.strip():
        raise QCParseError("empty QC response")

    data = _load_json(text)
    if not isinstance(data, dict):
        raise QCParseError("QC response is not a JSON object")

    try:
        return QCResponse.model_validate(data)
    except ValidationError as e:
        raise QCParseError(f"QC response failed validation: {e.error_count()} errors") from e


def extract_metadata_verdict(text: str | None) -> QCResponse | None:
    """Accept a verdict nested under a top-level ``metadata`` object."""
    if not text:
        return None
    try:
        data = _load_json(text)
    except QCParseError:
        return None

    metadata = data.get("metadata") if isinstance(data, dict) else None
    if not isinstance(metadata, dict):
        return None

    try:
        return QCResponse.model_validate(metadata)
    except ValidationError:
        return None


# =============================================================================
# REVIEWERS
# =============================================================================


class Reviewer(Protocol):
    """Reviewer capability: returns raw text expected to hold a JSON verdict."""

    async def review(self, task: Task, output: str, reminder: str | None = None) -> str: ...


class AgentReviewer:
    """
    Reviewer backed by any registered agent.

    Example:
        >>> reviewer = AgentReviewer(registry, agent="quality-control")
        >>> qc = QualityController(reviewer)
    """

    def __init__(
        self,
        registry: AgentRegistry,
        agent: str = "quality-control",
        output_limit: int = 8000,
    ) -> None:
        self.registry = registry
        self.agent = agent
        self.output_limit = output_limit

    def build_prompt(self, task: Task, output: str, reminder: str | None = None) -> str:
        """Build the review prompt for one task attempt."""
        sections = [
            f"# Quality Review: {task.display_name}",
            "",
            "Review the work below and decide whether the task is complete.",
            "",
            "## Task",
            task.prompt.strip() or "(no prompt)",
        ]

        if task.success_criteria:
            sections.extend(["", "## Success Criteria"])
            sections.extend(f"{i}. {c}" for i, c in enumerate(task.success_criteria, 1))

        excerpt = output[-self.output_limit :] if output else "(no output)"
        sections.extend([
            "",
            "## Agent Output",
            excerpt,
            "",
            "## Response Format",
            "Respond with a JSON object with keys verdict (GREEN, YELLOW or RED), "
            "feedback, issues, recommendations, should_retry and suggested_agent.",
        ])

        if reminder:
            sections.extend(["", reminder])

        return "\n".join(sections)

    async def review(self, task: Task, output: str, reminder: str | None = None) -> str:
        agent = self.registry.require(self.agent, task.key)
        review_task = Task(
            id=f"{task.id}-qc",
            source=task.source,
            name=f"QC review of {task.key}",
            agent=self.agent,
            prompt=self.build_prompt(task, output, reminder),
        )
        text, error = await agent.invoke(review_task)
        if error:
            raise QCParseError(f"QC agent failed: {error}")
        return text


# =============================================================================
# QUALITY CONTROLLER
# =============================================================================


class QualityController:
    """
    Runs the QC review stage for one task attempt.

    Example:
        >>> qc = QualityController(reviewer, timeout=300)
        >>> response = await qc.review(task, output)
        >>> response.passed
        True
    """

    def __init__(
        self,
        reviewer: Reviewer | None = None,
        enabled: bool = True,
        timeout: float = 300.0,
    ) -> None:
        self.reviewer = reviewer
        self.enabled = enabled
        self.timeout = timeout

    @property
    def active(self) -> bool:
        return self.enabled and self.reviewer is not None

    async def review(self, task: Task, output: str) -> QCResponse:
        """
        Review one attempt's output.

        Args:
            task: The task as invoked (final prompt for this attempt).
            output: Raw agent output.

        Returns:
            QCResponse. GREEN when QC is disabled.
        """
        if not self.active:
            return QCResponse(verdict=QCVerdict.GREEN, feedback="QC disabled")

        first = await self._request(task, output)
        try:
            return parse_qc_response(first)
        except QCParseError as e:
            logger.warning(f"QC response for {task.key} unparseable ({e}), retrying with schema reminder")

        second = await self._request(task, output, SCHEMA_REMINDER)
        try:
            return parse_qc_response(second)
        except QCParseError as e:
            error = e

        for text in (second, first):
            nested = extract_metadata_verdict(text)
            if nested is not None:
                logger.info(f"Using metadata verdict for {task.key}: {nested.verdict.value}")
                return nested

        logger.warning(f"QC for {task.key} failed to parse twice: {error}")
        return QCResponse(
            verdict=QCVerdict.RED,
            feedback=f"QC review could not be parsed: {error}",
            should_retry=True,
        )

    async def _request(self, task: Task, output: str, reminder: str | None = None) -> str | None:
        """Ask the reviewer once. Reviewer failures count as unparseable."""
        try:
            return await asyncio.wait_for(
                self.reviewer.review(task, output, reminder),
                timeout=self.timeout,
            )
        except TimeoutError:
            logger.warning(f"QC reviewer timed out after {self.timeout}s for {task.key}")
        except Exception as e:
            logger.warning(f"QC reviewer failed for {task.key}: {e}")
        return None
