"""
Failure-pattern classification.

Primary classification is a case-insensitive keyword and regex match over the
failed attempt's output and QC feedback. An optional semantic classifier may
refine it; its answer is accepted only when it is well-formed, confident
enough, and on time. Any other outcome keeps the keyword result.
"""

import asyncio
import json
import re
from typing import Any, Protocol

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from maestro.execution.agents import AgentRegistry
from maestro.planning.models import Task

# =============================================================================
# CATEGORIES
# =============================================================================

PATTERN_KEYWORDS: dict[str, tuple[str, ...]] = {
    "compilation_error": (
        "compilation error",
        "compilation fail",
        "compilation failed",
        "build fail",
        "build error",
        "parse error",
        "code won't compile",
        "unable to build",
    ),
    "test_failure": (
        "test fail",
        "tests fail",
        "test failure",
        "assertion fail",
        "verification fail",
        "check fail",
        "validation fail",
    ),
    "dependency_missing": (
        "dependency",
        "package not found",
        "module not found",
        "unable to locate",
        "missing package",
        "import error",
        "cannot find module",
    ),
    "permission_error": (
        "permission",
        "access denied",
        "forbidden",
        "unauthorized",
    ),
    "timeout": (
        "timeout",
        "timed out",
        "deadline",
        "deadline exceeded",
        "request timeout",
        "execution timeout",
    ),
    "runtime_error": (
        "runtime error",
        "panic",
        "segfault",
        "segmentation fault",
        "nil pointer",
        "null reference",
        "stack overflow",
    ),
}

PATTERN_REGEXES: dict[str, tuple[re.Pattern[str], ...]] = {
    "compilation_error": (
        re.compile(r"\bsyntax ?error\b", re.IGNORECASE),
        re.compile(r"\bundefined: \w+", re.IGNORECASE),
        re.compile(r"\bcannot find symbol\b", re.IGNORECASE),
    ),
    "test_failure": (
        re.compile(r"\b\d+ (?:tests? )?failed\b", re.IGNORECASE),
        re.compile(r"\bAssertionError\b", re.IGNORECASE),
        re.compile(r"^--- FAIL:", re.IGNORECASE | re.MULTILINE),
    ),
    "dependency_missing": (
        re.compile(r"\bModuleNotFoundError\b", re.IGNORECASE),
        re.compile(r"\bno module named\b", re.IGNORECASE),
    ),
    "permission_error": (
        re.compile(r"\bEACCES\b", re.IGNORECASE),
        re.compile(r"\bEPERM\b", re.IGNORECASE),
    ),
    "timeout": (
        re.compile(r"\bETIMEDOUT\b", re.IGNORECASE),
    ),
    "runtime_error": (
        re.compile(r"\bTraceback \(most recent call last\)", re.IGNORECASE),
        re.compile(r"\bnull ?pointer exception\b", re.IGNORECASE),
    ),
}

PATTERN_CATEGORIES: tuple[str, ...] = tuple(PATTERN_KEYWORDS)


# =============================================================================
# MODELS
# =============================================================================


class PatternMatch(BaseModel):
    """Categories matched for one failed attempt."""

    categories: list[str] = Field(default_factory=list)
    keywords: dict[str, list[str]] = Field(default_factory=dict)
    source: str = "keyword"
    confidence: float = 1.0
    reasoning: str = ""

    @property
    def matched(self) -> bool:
        return bool(self.categories)


class SemanticClassification(BaseModel):
    """Structured answer expected from a semantic classifier."""

    category: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""


class SemanticClassifier(Protocol):
    """Returns a JSON object (text or dict) with category/confidence/reasoning."""

    async def classify(self, text: str) -> str | dict[str, Any]: ...


# =============================================================================
# CLASSIFIER
# =============================================================================


def match_patterns(text: str) -> PatternMatch:
    """
    Keyword and regex classification.

    Args:
        text: Combined output and feedback.

    Returns:
        PatternMatch with every matched category in fixed category order and
        the deduplicated triggers per category.

    Example:
        >>> match_patterns("panic: nil pointer dereference").categories
        ['runtime_error']
    """
    lowered = text.lower()
    result = PatternMatch()

    for category in PATTERN_CATEGORIES:
        hits: list[str] = []
        for keyword in PATTERN_KEYWORDS[category]:
            if keyword in lowered and keyword not in hits:
                hits.append(keyword)
        for pattern in PATTERN_REGEXES.get(category, ()):
            found = pattern.search(text)
            if found and found.group(0).lower() not in hits:
                hits.append(found.group(0).lower())
        if hits:
            result.categories.append(category)
            result.keywords[category] = hits

    return result


class PatternClassifier:
    """
    Classify a failed attempt into the fixed failure categories.

    Example:
        >>> classifier = PatternClassifier()
        >>> match = await classifier.classify("build error: undefined: Foo", "")
        >>> match.categories
        ['compilation_error']
    """

    def __init__(
        self,
        semantic: SemanticClassifier | None = None,
        semantic_enabled: bool = False,
        confidence_threshold: float = 0.85,
        semantic_timeout: float = 30.0,
    ) -> None:
        self.semantic = semantic
        self.semantic_enabled = semantic_enabled
        self.confidence_threshold = confidence_threshold
        self.semantic_timeout = semantic_timeout

    async def classify(self, output: str | None, feedback: str | None = None) -> PatternMatch:
        """Classify combined output and feedback."""
        text = "\n".join(part for part in (output, feedback) if part)
        primary = match_patterns(text)

        if not (self.semantic_enabled and self.semantic is not None) or not text:
            return primary

        semantic = await self._semantic(text)
        if semantic is None:
            return primary

        categories = [semantic.category]
        categories.extend(c for c in primary.categories if c != semantic.category)
        return PatternMatch(
            categories=categories,
            keywords=primary.keywords,
            source="semantic",
            confidence=semantic.confidence,
            reasoning=semantic.reasoning,
        )

    async def _semantic(self, text: str) -> SemanticClassification | None:
        """Ask the semantic classifier. None means fall back."""
        try:
            raw = await asyncio.wait_for(self.semantic.classify(text), timeout=self.semantic_timeout)
            if isinstance(raw, str):
                result = SemanticClassification.model_validate_json(raw)
            else:
                result = SemanticClassification.model_validate(raw)
        except TimeoutError:
            logger.debug(f"Semantic classifier timed out after {self.semantic_timeout}s")
            return None
        except ValidationError as e:
            logger.debug(f"Semantic classifier returned invalid response: {e.error_count()} errors")
            return None
        except Exception as e:
            logger.debug(f"Semantic classifier failed: {e}")
            return None

        if result.category not in PATTERN_CATEGORIES:
            logger.debug(f"Semantic classifier returned unknown category {result.category!r}")
            return None
        if result.confidence < self.confidence_threshold:
            logger.debug(
                f"Semantic confidence {result.confidence:.2f} below "
                f"threshold {self.confidence_threshold:.2f}"
            )
            return None

        return result


class AgentSemanticClassifier:
    """Semantic classifier backed by a registered agent."""

    def __init__(self, registry: AgentRegistry, agent: str = "general-purpose") -> None:
        self.registry = registry
        self.agent = agent

    def build_prompt(self, text: str) -> str:
        categories = ", ".join(PATTERN_CATEGORIES)
        return (
            "Classify the failure below into exactly one category.\n\n"
            f"Categories: {categories}\n\n"
            "Respond with ONLY a JSON object: "
            '{"category": "<category>", "confidence": <0.0-1.0>, "reasoning": "<one sentence>"}\n\n'
            f"## Failure\n{text[-6000:]}"
        )

    async def classify(self, text: str) -> str | dict[str, Any]:
        agent = self.registry.require(self.agent, "semantic-classifier")
        task = Task(
            id="classify",
            name="Classify failure",
            agent=self.agent,
            prompt=self.build_prompt(text),
        )
        output, error = await agent.invoke(task)
        if error:
            raise RuntimeError(error)

        start, end = output.find("{"), output.rfind("}")
        if start == -1 or end <= start:
            return output
        return json.loads(output[start : end + 1])
