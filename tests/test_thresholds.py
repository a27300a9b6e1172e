"""Tests for threshold parsing and evaluation."""

import pytest

from loadgate.metrics import MetricRegistry
from loadgate.models import ThresholdSpec
from loadgate.thresholds import (
    ThresholdEvaluator,
    ThresholdParseError,
    evaluate,
    parse_expression,
    parse_metric_key,
    parse_thresholds,
    thresholds_to_dict,
    validate_against,
)


def _registry():
    registry = MetricRegistry()
    registry.declare_builtin_metrics()
    return registry


class TestParseExpression:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("p(95)<500", ("p", 95.0, "<", 500.0)),
            ("p(99.9) <= 1500", ("p", 99.9, "<=", 1500.0)),
            ("avg<200", ("avg", None, "<", 200.0)),
            ("rate<0.05", ("rate", None, "<", 0.05)),
            ("count>=100", ("count", None, ">=", 100.0)),
            ("med > 1e2", ("med", None, ">", 100.0)),
            ("value<=10", ("value", None, "<=", 10.0)),
        ],
    )
    def test_valid(self, text, expected):
        assert parse_expression(text) == expected

    @pytest.mark.parametrize(
        "text",
        ["p95<500", "p(95)<<500", "avg", "avg==5", "mean<3", "p(0)<1", "p(100)<1", "", 500],
    )
    def test_invalid(self, text):
        with pytest.raises(ThresholdParseError):
            parse_expression(text)


class TestParseMetricKey:
    def test_plain(self):
        assert parse_metric_key("http_req_duration") == ("http_req_duration", ())

    def test_scoped_and_sorted(self):
        name, scope = parse_metric_key("http_req_duration{phase:spike, name:home}")
        assert name == "http_req_duration"
        assert scope == (("name", "home"), ("phase", "spike"))

    def test_bad_scope(self):
        with pytest.raises(ThresholdParseError, match="tag:value"):
            parse_metric_key("http_req_failed{phase}")


class TestParseThresholds:
    def test_string_and_object_entries(self):
        specs = parse_thresholds({
            "http_req_duration": ["p(95)<500", "avg<200"],
            "http_req_failed": [
                {"threshold": "rate<0.05", "abortOnFail": True, "delayAbortEval": "10s"}
            ],
            "checks": [{"threshold": "rate>0.9", "category": "availability"}],
        })
        assert len(specs) == 4
        abort = specs[2]
        assert abort.metric == "http_req_failed"
        assert abort.abort_on_fail is True
        assert abort.delay_abort_eval == 10.0
        assert specs[3].category == "availability"

    def test_single_expression_is_accepted(self):
        specs = parse_thresholds({"http_req_duration": "p(95)<500"})
        assert specs[0].percentile == 95.0

    def test_reports_every_error(self):
        with pytest.raises(ThresholdParseError) as excinfo:
            parse_thresholds({
                "http_req_duration": ["p(95)<<500", "avg<1"],
                "http_req_failed{phase}": ["rate<0.05"],
                "checks": [{"threshold": "rate>0.9", "category": "speed"}],
            })
        message = str(excinfo.value)
        assert "p(95)<<500" in message
        assert "phase" in message
        assert "speed" in message

    def test_not_a_mapping(self):
        with pytest.raises(ThresholdParseError):
            parse_thresholds(["p(95)<500"])

    def test_round_trip_through_dict(self):
        raw = {
            "http_req_duration{phase:spike}": ["p(95)<500"],
            "http_req_failed": [{"threshold": "rate<0.05", "abortOnFail": True}],
        }
        assert parse_thresholds(thresholds_to_dict(parse_thresholds(raw))) == parse_thresholds(raw)


class TestValidateAgainst:
    def test_unknown_metric(self):
        specs = parse_thresholds({"made_up": ["avg<1"]})
        with pytest.raises(ThresholdParseError, match="not declared"):
            validate_against(specs, _registry())

    def test_statistic_kind_mismatch(self):
        specs = parse_thresholds({"http_req_failed": ["p(95)<1"]})
        with pytest.raises(ThresholdParseError, match="not valid for rate"):
            validate_against(specs, _registry())

    def test_custom_metric(self):
        registry = _registry()
        registry.trend("quote_length")
        validate_against(parse_thresholds({"quote_length": ["avg<300"]}), registry)


class TestEvaluate:
    def test_failing_rate(self):
        registry = _registry()
        for i in range(1000):
            registry.add("http_req_failed", i < 600)
        spec = parse_thresholds({"http_req_failed": ["rate<0.05"]})[0]
        result = evaluate(spec, registry.snapshot(10))
        assert result.ok is False
        assert result.observed == pytest.approx(0.6)

    def test_passing_percentile(self):
        registry = _registry()
        for _ in range(100):
            registry.add("http_req_duration", 200.0)
        spec = parse_thresholds({"http_req_duration": ["p(95)<500"]})[0]
        result = evaluate(spec, registry.snapshot(10))
        assert result.ok is True
        assert result.observed == 200.0

    def test_boundary_is_strict(self):
        registry = _registry()
        registry.add("http_req_duration", 500.0)
        snapshot = registry.snapshot(1)
        strict, inclusive = parse_thresholds({"http_req_duration": ["max<500", "max<=500"]})
        assert evaluate(strict, snapshot).ok is False
        assert evaluate(inclusive, snapshot).ok is True

    def test_empty_scope_passes_vacuously(self):
        registry = _registry()
        registry.add("http_req_duration", 9000.0, phase="warm")
        spec = parse_thresholds({"http_req_duration{phase:spike}": ["p(95)<500"]})[0]
        result = evaluate(spec, registry.snapshot(1))
        assert result.ok is True
        assert result.observed is None


class TestThresholdEvaluator:
    def _specs(self):
        return parse_thresholds({
            "http_req_duration": ["p(95)<500"],
            "http_req_failed": [{"threshold": "rate<0.05", "abortOnFail": True, "delayAbortEval": 5}],
        })

    def test_abort_specs(self):
        evaluator = ThresholdEvaluator(self._specs())
        assert [s.metric for s in evaluator.abort_specs] == ["http_req_failed"]

    def test_delay_abort_eval(self):
        registry = _registry()
        registry.add("http_req_failed", True)
        snapshot = registry.snapshot(1)
        evaluator = ThresholdEvaluator(self._specs())
        assert evaluator.check_abort(snapshot, elapsed=4.9) == []
        failures = evaluator.check_abort(snapshot, elapsed=5.0)
        assert len(failures) == 1
        assert failures[0].spec.metric == "http_req_failed"

    def test_non_abort_failures_do_not_abort(self):
        registry = _registry()
        registry.add("http_req_duration", 9000.0)
        registry.add("http_req_failed", False)
        evaluator = ThresholdEvaluator(self._specs())
        assert evaluator.check_abort(registry.snapshot(1), elapsed=60) == []
        assert [e.ok for e in evaluator.evaluate_all(registry.snapshot(1))] == [False, True]


class TestSpecDescription:
    def test_describe(self):
        spec = ThresholdSpec(
            metric="http_req_duration",
            statistic="p",
            percentile=95,
            operator="<",
            bound=500,
            scope=(("phase", "spike"),),
        )
        assert spec.describe() == "http_req_duration{phase:spike}: p(95)<500"
