"""Unit tests for QC review parsing and retry."""

import asyncio

import pytest

from maestro.core.errors import QCParseError
from maestro.execution.agents import AgentRegistry
from maestro.execution.quality import (
    SCHEMA_REMINDER,
    AgentReviewer,
    QualityController,
    extract_metadata_verdict,
    parse_qc_response,
)
from maestro.execution.results import QCVerdict
from maestro.planning.models import Task

GREEN = '{"verdict": "GREEN", "feedback": "Looks good"}'


@pytest.fixture
def task() -> Task:
    return Task(id="1", name="Add model", prompt="Add the model", success_criteria=["Has tests"])


class TestParsing:
    """Tests for parsing reviewer text."""

    def test_plain_json(self) -> None:
        """Test a bare JSON object parses."""
        response = parse_qc_response(GREEN)

        assert response.verdict == QCVerdict.GREEN
        assert response.passed

    def test_fenced_json(self) -> None:
        """Test JSON inside a code fence parses."""
        text = 'Here you go:\n```json\n{"verdict": "red", "feedback": "missing tests"}\n```'

        response = parse_qc_response(text)

        assert response.verdict == QCVerdict.RED
        assert not response.passed

    def test_json_inside_prose(self) -> None:
        """Test JSON surrounded by prose parses."""
        text = 'Verdict follows {"verdict": "YELLOW", "issues": [{"description": "nit"}]} thanks'

        response = parse_qc_response(text)

        assert response.verdict == QCVerdict.YELLOW
        assert response.passed
        assert response.issues[0].description == "nit"

    def test_unknown_verdict(self) -> None:
        """Test a verdict outside GREEN/YELLOW/RED is rejected."""
        with pytest.raises(QCParseError):
            parse_qc_response('{"verdict": "BLUE"}')

    def test_not_json(self) -> None:
        """Test prose with no JSON is rejected."""
        with pytest.raises(QCParseError):
            parse_qc_response("looks fine to me")

    def test_empty(self) -> None:
        """Test an empty response is rejected."""
        with pytest.raises(QCParseError):
            parse_qc_response("   ")

    def test_metadata_verdict(self) -> None:
        """Test a verdict nested under metadata is found."""
        text = '{"status": "ok", "metadata": {"verdict": "GREEN", "feedback": "fine"}}'

        with pytest.raises(QCParseError):
            parse_qc_response(text)
        assert extract_metadata_verdict(text).verdict == QCVerdict.GREEN

    def test_summary_lists_issues(self) -> None:
        """Test the summary joins feedback and issues."""
        response = parse_qc_response(
            '{"verdict": "RED", "feedback": "Broken", '
            '"issues": [{"severity": "critical", "description": "No tests", "location": "app.py"}]}'
        )

        assert response.summary() == "Broken\n[critical] No tests (app.py)"


class TestQualityController:
    """Tests for the QC review stage."""

    @pytest.mark.asyncio
    async def test_disabled_is_green(self, task: Task, make_reviewer) -> None:
        """Test disabled QC passes without asking the reviewer."""
        reviewer = make_reviewer([GREEN])
        qc = QualityController(reviewer, enabled=False)

        response = await qc.review(task, "output")

        assert response.verdict == QCVerdict.GREEN
        assert reviewer.calls == []

    @pytest.mark.asyncio
    async def test_no_reviewer_is_green(self, task: Task) -> None:
        """Test QC without a reviewer passes."""
        response = await QualityController(None).review(task, "output")

        assert response.passed

    @pytest.mark.asyncio
    async def test_valid_first_response(self, task: Task, make_reviewer) -> None:
        """Test a parseable response is used without a retry."""
        reviewer = make_reviewer([GREEN])

        response = await QualityController(reviewer).review(task, "output")

        assert response.feedback == "Looks good"
        assert reviewer.calls == [("1", None)]

    @pytest.mark.asyncio
    async def test_malformed_retried_once(self, task: Task, make_reviewer) -> None:
        """Test a malformed response is retried exactly once with the reminder."""
        reviewer = make_reviewer(["not json", '{"verdict": "YELLOW", "feedback": "ok-ish"}'])

        response = await QualityController(reviewer).review(task, "output")

        assert response.verdict == QCVerdict.YELLOW
        assert reviewer.calls == [("1", None), ("1", SCHEMA_REMINDER)]

    @pytest.mark.asyncio
    async def test_metadata_fallback_after_retry(self, task: Task, make_reviewer) -> None:
        """Test a metadata verdict is accepted when both parses fail."""
        reviewer = make_reviewer([
            "garbage",
            '{"result": "done", "metadata": {"verdict": "GREEN", "feedback": "nested"}}',
        ])

        response = await QualityController(reviewer).review(task, "output")

        assert response.verdict == QCVerdict.GREEN
        assert response.feedback == "nested"
        assert len(reviewer.calls) == 2

    @pytest.mark.asyncio
    async def test_unparseable_twice_is_red(self, task: Task, make_reviewer) -> None:
        """Test two unparseable responses give RED with a parse note."""
        reviewer = make_reviewer(["garbage", "still garbage", GREEN])

        response = await QualityController(reviewer).review(task, "output")

        assert response.verdict == QCVerdict.RED
        assert "could not be parsed" in response.feedback
        assert len(reviewer.calls) == 2

    @pytest.mark.asyncio
    async def test_reviewer_errors_do_not_raise(self, task: Task) -> None:
        """Test a failing reviewer yields RED instead of an exception."""

        class BrokenReviewer:
            async def review(self, task, output, reminder=None):
                raise ConnectionError("reviewer offline")

        response = await QualityController(BrokenReviewer()).review(task, "output")

        assert response.verdict == QCVerdict.RED

    @pytest.mark.asyncio
    async def test_reviewer_timeout(self, task: Task) -> None:
        """Test a slow reviewer counts as unparseable."""

        class SlowReviewer:
            async def review(self, task, output, reminder=None):
                await asyncio.sleep(5)
                return GREEN

        qc = QualityController(SlowReviewer(), timeout=0.05)

        response = await qc.review(task, "output")

        assert response.verdict == QCVerdict.RED


class TestAgentReviewer:
    """Tests for the agent-backed reviewer."""

    @pytest.mark.asyncio
    async def test_prompt_carries_task_and_output(self, task: Task, make_agent) -> None:
        """Test the review prompt holds the task, criteria and output."""
        agent = make_agent([(GREEN, None)])
        registry = AgentRegistry()
        registry.register("quality-control", agent)

        text = await AgentReviewer(registry).review(task, "created app/models.py", SCHEMA_REMINDER)

        assert text == GREEN
        prompt = agent.calls[0].prompt
        assert "Add the model" in prompt
        assert "1. Has tests" in prompt
        assert "created app/models.py" in prompt
        assert SCHEMA_REMINDER in prompt
        assert agent.calls[0].id == "1-qc"

    @pytest.mark.asyncio
    async def test_agent_error_raises(self, task: Task, make_agent) -> None:
        """Test a failing QC agent raises a parse error."""
        registry = AgentRegistry()
        registry.register("quality-control", make_agent([("", "crashed")]))

        with pytest.raises(QCParseError):
            await AgentReviewer(registry).review(task, "output")

    def test_output_truncated(self, task: Task) -> None:
        """Test only the tail of long output is sent for review."""
        reviewer = AgentReviewer(AgentRegistry(), output_limit=10)

        prompt = reviewer.build_prompt(task, "x" * 50 + "0123456789")

        assert "0123456789" in prompt
        assert "x" * 11 not in prompt
