"""Failure-pattern analysis over recorded execution history.

Everything here is computed on demand from stored records; there is no
separately maintained index to keep in sync.
"""

from collections import Counter

from maestro.knowledge.schemas import (
    AgentStats,
    ExecutionRecord,
    FailureAnalysis,
    LearningSummary,
    PatternStats,
)

PATTERN_ADVICE: dict[str, str] = {
    "compilation_error": (
        "Focus on fixing compilation errors. Review syntax, type definitions, "
        "and imports carefully."
    ),
    "test_failure": (
        "Investigate test failures. Check assertions, test data, and expected "
        "vs actual behavior."
    ),
    "dependency_missing": (
        "Resolve missing dependencies. Verify all required packages are "
        "installed and versions are compatible."
    ),
    "permission_error": (
        "Resolve permission issues. Check file/directory permissions and "
        "access rights."
    ),
    "timeout": (
        "Address timeout issues. Break the work into smaller steps or avoid "
        "long-running commands."
    ),
    "runtime_error": (
        "Debug runtime errors. Add error handling and validate input data."
    ),
}


def failure_streak(records: list[ExecutionRecord]) -> tuple[str | None, int]:
    """
    Find the longest run of consecutive, most recent failures sharing a category.

    Walks backwards from the newest record. The streak for a category ends at
    the first success or at the first failure that lacks the category.

    Args:
        records: History ordered oldest first.

    Returns:
        (category, length) of the strongest streak, or (None, 0).
    """
    best: tuple[str | None, int] = (None, 0)
    failures = []
    for record in reversed(records):
        if record.success:
            break
        failures.append(record)

    if not failures:
        return best

    for category in sorted(set(failures[0].patterns)):
        length = 0
        for record in failures:
            if category not in record.patterns:
                break
            length += 1
        if length > best[1]:
            best = (category, length)

    return best


def common_patterns(records: list[ExecutionRecord]) -> list[str]:
    """Failure categories across failed records, most frequent first."""
    counts: Counter[str] = Counter()
    for record in records:
        if not record.success:
            counts.update(dict.fromkeys(record.patterns, 1))
    return [name for name, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


def summarize(records: list[ExecutionRecord]) -> LearningSummary:
    """
    Compute aggregate statistics from a set of records.

    Returns:
        LearningSummary with pattern stats, agent stats, and detection rate.
    """
    summary = LearningSummary()

    for record in records:
        summary.total_executions += 1
        if not record.success:
            summary.failed_executions += 1

        for category in record.patterns:
            stats = summary.patterns.setdefault(category, PatternStats(category=category))
            stats.detection_count += 1
            if stats.last_detected is None or record.timestamp > stats.last_detected:
                stats.last_detected = record.timestamp
            stats.add_keywords(record.pattern_keywords.get(category, []))
            summary.total_patterns_found += 1

        if record.agent:
            agent = summary.agents.setdefault(record.agent, AgentStats(agent=record.agent))
            agent.total += 1
            if record.success:
                agent.successes += 1

    return summary


def best_alternative_agent(
    agents: dict[str, AgentStats],
    tried: list[str],
    min_successes: int,
    fallback: str,
) -> tuple[str, str]:
    """
    Pick the historically most successful agent that has not been tried.

    Returns:
        (agent, reason). Falls back to ``fallback`` when no untried agent has
        at least ``min_successes`` successes.
    """
    candidates = [
        stats for name, stats in agents.items()
        if name not in tried and stats.successes >= min_successes
    ]
    if not candidates:
        return fallback, "no statistically significant alternatives found"

    best = max(candidates, key=lambda s: (s.successes, s.success_rate, s.agent))
    return best.agent, f"{best.successes} successful executions"


def generate_approach_suggestion(patterns: list[str], alternative_agent: str) -> str:
    """Build human-readable advice from detected patterns."""
    if not patterns:
        return f"Try using the {alternative_agent} agent for a different perspective on this task."

    advice = [PATTERN_ADVICE[p] for p in patterns if p in PATTERN_ADVICE]
    result = f"Detected patterns: {', '.join(patterns)}\n\n"
    if advice:
        result += "\n\n".join(advice)
        result += (
            f"\n\nRecommendation: Try using the {alternative_agent} agent, "
            "which may handle these issues better."
        )
    else:
        result += f"Try using the {alternative_agent} agent for a different approach."
    return result


def analyze_failures(
    history: list[ExecutionRecord],
    agents: dict[str, AgentStats],
    min_failures: int = 2,
    fallback_agent: str = "general-purpose",
    min_successes: int = 5,
) -> FailureAnalysis:
    """
    Examine one task's history and decide how the next attempt should adapt.

    An agent suggestion is only emitted once the most recent ``min_failures``
    attempts failed with the same category.

    Args:
        history: This task identity's records, oldest first.
        agents: Agent success statistics across the plan.
        min_failures: Consecutive same-category failures required.
        fallback_agent: Agent suggested when no alternative qualifies.
        min_successes: Successes an alternative agent needs.

    Returns:
        FailureAnalysis (empty when there is no history).
    """
    analysis = FailureAnalysis()
    if not history:
        return analysis

    analysis.total_attempts = len(history)
    analysis.failed_attempts = sum(1 for r in history if not r.success)
    analysis.tried_agents = list(dict.fromkeys(r.agent for r in history if r.agent))
    analysis.common_patterns = common_patterns(history)
    analysis.streak_category, analysis.streak_length = failure_streak(history)

    if analysis.streak_length >= min_failures:
        analysis.should_try_different_agent = True
        agent, reason = best_alternative_agent(
            agents, analysis.tried_agents, min_successes, fallback_agent
        )
        analysis.suggested_agent = agent
        analysis.suggested_approach = generate_approach_suggestion(
            analysis.common_patterns, agent
        )
        analysis.suggested_approach += f"\n\nReason: {reason}"

    return analysis


def format_learning_context(analysis: FailureAnalysis) -> str:
    """
    Render the failure-context block appended to a task prompt.

    Returns:
        Empty string when there are no past failures.
    """
    if not analysis.has_failures:
        return ""

    lines = [
        "",
        "",
        "## Learning Context",
        f"Note: This task has {analysis.failed_attempts} past failures.",
    ]
    if analysis.tried_agents:
        lines.append(f"Previously tried agents: {', '.join(analysis.tried_agents)}.")
    if analysis.common_patterns:
        lines.append(f"Common issues: {', '.join(analysis.common_patterns)}.")
    if analysis.suggested_approach:
        lines.extend(["", f"Recommended approach: {analysis.suggested_approach}"])
    return "\n".join(lines)
