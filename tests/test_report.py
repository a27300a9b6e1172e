"""Tests for result serialisation, the text summary and exit codes."""

import json
import os

import pytest

from loadgate.gate import aggregate
from loadgate.models import (
    BaselineComparison,
    Evaluation,
    RunResult,
    SummaryStats,
    ThresholdSpec,
)
from loadgate.report import (
    EXIT_PASS,
    EXIT_THRESHOLD_BREACH,
    EXIT_UNSTABLE,
    exit_code,
    render_summary,
    result_exit_code,
    result_to_dict,
    result_to_json,
)


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")


def _result(passed=True, aborted=False):
    spec = ThresholdSpec(
        metric="http_req_duration",
        statistic="p",
        percentile=95,
        operator="<",
        bound=500,
        scope=(("phase", "spike"),),
    )
    observed = 200.0 if passed else 800.0
    gate = aggregate([Evaluation(spec, ok=passed, observed=observed)], aborted=aborted)
    return RunResult(
        started_at="2026-10-02T09:30:00Z",
        duration=60.123456,
        aborted=aborted,
        abort_reason="threshold failed: x" if aborted else None,
        gate=gate,
        metrics={"http_req_duration": SummaryStats(count=3, avg=observed, p95=observed)},
        stages_completed=2,
        stages_total=3,
        baseline_comparison=BaselineComparison("avg", {"http_req_duration": 75.0}, "severe degradation"),
    )


class TestExitCode:
    @pytest.mark.parametrize(
        "passed, grade, min_grade, expected",
        [
            (True, "A", None, EXIT_PASS),
            (True, "C", "B", EXIT_UNSTABLE),
            (True, "B", "B", EXIT_PASS),
            (False, "A", None, EXIT_THRESHOLD_BREACH),
            (False, "F", "A", EXIT_THRESHOLD_BREACH),
        ],
    )
    def test_codes(self, passed, grade, min_grade, expected):
        assert exit_code(passed, grade, min_grade) == expected

    def test_result_exit_code(self):
        assert result_exit_code(_result(passed=False)) == EXIT_THRESHOLD_BREACH
        assert result_exit_code(_result(passed=True)) == EXIT_PASS


class TestResultToDict:
    def test_shape(self):
        data = result_to_dict(_result())
        assert data["duration"] == 60.123
        assert data["stages_completed"] == 2
        assert data["metrics"]["http_req_duration"]["p95"] == 200.0
        evaluation = data["gate"]["evaluations"][0]
        assert evaluation["expression"] == "p(95)<500"
        assert evaluation["scope"] == {"phase": "spike"}
        assert data["baseline_comparison"]["classification"] == "severe degradation"
        assert data["recovery"] is None

    def test_json_is_valid(self):
        parsed = json.loads(result_to_json(_result(passed=False)))
        assert parsed["gate"]["passed"] is False
        assert parsed["gate"]["violations"][0]["metric"] == "http_req_duration"


class TestRenderSummary:
    def test_passing(self):
        text = render_summary(result_to_dict(_result()))
        assert "http_req_duration{phase:spike} p(95)<500" in text
        assert "PASS" in text
        assert "Grade: A" in text
        assert "severe degradation" in text
        assert "+75.0%" in text

    def test_aborted(self):
        text = render_summary(result_to_dict(_result(passed=True, aborted=True)))
        assert "ABORTED: threshold failed: x" in text
        assert "Overall: FAIL" in text

    def test_fixture_artifact(self):
        with open(os.path.join(FIXTURES_DIR, "result-degraded.json")) as f:
            text = render_summary(json.load(f))
        assert "FAIL" in text
        assert "Grade: B" in text
        assert "[abort]" in text

    def test_vacuous_threshold(self):
        data = result_to_dict(_result())
        data["gate"]["evaluations"][0]["observed"] = None
        assert "PASS (no data)" in render_summary(data)
