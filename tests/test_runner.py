"""End-to-end tests for TestRun with a simulated clock."""

import asyncio

import pytest

from loadgate.baseline import SEVERE_DEGRADATION
from loadgate.behaviors import Behavior, BehaviorKind, BehaviorTable
from loadgate.models import (
    BaselineSnapshot,
    ConfigurationError,
    PhaseRule,
    RequestResult,
    RunConfig,
    Stage,
    SummaryStats,
    ThinkTime,
)
from loadgate.report import render_summary, result_to_dict
from loadgate.runner import TestRun
from loadgate.thresholds import parse_thresholds


class FakeClock:
    """Monotonic clock that only moves when the control loop sleeps."""

    def __init__(self, yields=3):
        self.now = 0.0
        self.yields = yields

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds
        for _ in range(self.yields):
            await asyncio.sleep(0)


class FakeExecutor:
    def __init__(self, clock, latency_ms=200.0, fail_after=None):
        self.clock = clock
        self.latency_ms = latency_ms
        self.fail_after = fail_after
        self.calls = 0

    async def execute(self, method, url, headers=None, body=None, timeout=30.0):
        self.calls += 1
        if self.fail_after is not None and self.clock() >= self.fail_after:
            return RequestResult(status=500, latency_ms=self.latency_ms)
        return RequestResult(status=200, latency_ms=self.latency_ms, bytes_received=128)


def _config(stages, thresholds=None, **kwargs):
    kwargs.setdefault("think_time", ThinkTime(min_seconds=0, max_seconds=0))
    kwargs.setdefault("grace_period", 1.0)
    return RunConfig(
        base_url="http://svc.test",
        profile=tuple(stages),
        thresholds=tuple(parse_thresholds(thresholds or {})),
        **kwargs,
    )


def _run(config, clock=None, executor=None, **kwargs):
    clock = clock or FakeClock()
    executor = executor or FakeExecutor(clock)
    test_run = TestRun(config, executor, clock=clock, sleep=clock.sleep, **kwargs)
    return test_run, executor


class TestPassingRun:
    @pytest.mark.asyncio
    async def test_constant_latency_passes_with_grade_a(self):
        config = _config(
            [Stage(0, 10)],
            {"http_req_duration": ["p(95)<500"], "http_req_failed": ["rate<0.05"]},
        )
        test_run, executor = _run(config)
        result = await test_run.run()
        assert executor.calls > 0
        stats = result.metrics["http_req_duration"]
        assert stats.avg == 200.0
        assert stats.p95 == 200.0
        assert result.metrics["http_req_failed"].rate == 0.0
        assert result.gate.passed is True
        assert result.gate.grade == "A"
        assert result.aborted is False
        assert result.stages_completed == result.stages_total == 1

    @pytest.mark.asyncio
    async def test_concurrency_follows_profile(self):
        config = _config([Stage(10, 4), Stage(10, 4), Stage(5, 0)])
        test_run, _ = _run(config)
        result = await test_run.run()
        assert result.metrics["vus_max"].max == 4
        assert result.metrics["vus"].max == 4
        assert result.metrics["vus"].min == 0
        assert result.stages_completed == 3
        assert result.duration == pytest.approx(26.0)

    @pytest.mark.asyncio
    async def test_phase_tags_from_stage_names(self):
        config = _config(
            [Stage(5, 2, name="warm"), Stage(5, 2, name="steady")],
            {"http_req_duration{phase:steady}": ["p(95)<500"]},
        )
        test_run, _ = _run(config)
        result = await test_run.run()
        evaluation = result.gate.evaluations[0]
        assert evaluation.observed == 200.0
        assert evaluation.ok is True

    @pytest.mark.asyncio
    async def test_phase_rules_by_concurrency(self):
        config = _config(
            [Stage(5, 2), Stage(5, 8)],
            {
                "http_req_duration{phase:spike}": ["avg<100"],
                "http_req_duration{phase:calm}": ["avg<500"],
            },
            phase_rules=(
                PhaseRule(tag="spike", min_concurrency=5),
                PhaseRule(tag="calm", max_concurrency=4),
            ),
        )
        test_run, _ = _run(config)
        result = await test_run.run()
        spike, calm = result.gate.evaluations
        assert spike.ok is False
        assert calm.ok is True
        assert result.gate.passed is False


class TestFailingRun:
    @pytest.mark.asyncio
    async def test_error_rate_breach(self):
        clock = FakeClock()
        executor = FakeExecutor(clock, fail_after=0)
        config = _config([Stage(0, 5), Stage(5, 5)], {"http_req_failed": ["rate<0.05"]})
        test_run, _ = _run(config, clock=clock, executor=executor)
        result = await test_run.run()
        assert result.metrics["http_req_failed"].rate == 1.0
        assert result.gate.passed is False
        assert [s.metric for s in result.gate.violations] == ["http_req_failed"]
        assert result.aborted is False

    @pytest.mark.asyncio
    async def test_abort_on_fail_stops_run_early(self):
        clock = FakeClock()
        executor = FakeExecutor(clock, fail_after=10)
        config = _config(
            [Stage(30, 10), Stage(30, 20)],
            {"http_req_failed": [{"threshold": "rate<0.05", "abortOnFail": True}]},
        )
        test_run, _ = _run(config, clock=clock, executor=executor)
        result = await test_run.run()
        assert result.aborted is True
        assert result.gate.passed is False
        assert result.gate.aborted is True
        assert 10 <= result.duration <= 12
        assert result.stages_completed == 0
        assert result.metrics["vus_max"].max <= 10
        assert "http_req_failed" in result.abort_reason

    @pytest.mark.asyncio
    async def test_delay_abort_eval(self):
        clock = FakeClock()
        executor = FakeExecutor(clock, fail_after=0)
        config = _config(
            [Stage(0, 2), Stage(20, 2)],
            {
                "http_req_failed": [
                    {"threshold": "rate<0.05", "abortOnFail": True, "delayAbortEval": "5s"}
                ]
            },
        )
        test_run, _ = _run(config, clock=clock, executor=executor)
        result = await test_run.run()
        assert result.aborted is True
        assert 5 <= result.duration <= 6

    @pytest.mark.asyncio
    async def test_slow_failing_target_fails_gate(self):
        clock = FakeClock()
        executor = FakeExecutor(clock, latency_ms=5000.0, fail_after=0)
        config = _config(
            [Stage(5, 4)],
            {"http_req_duration": ["p(95)<500"], "http_req_failed": ["rate<0.05"]},
        )
        test_run, _ = _run(config, clock=clock, executor=executor)
        result = await test_run.run()
        assert all(e.observed is not None for e in result.gate.evaluations)
        assert result.gate.passed is False
        assert result.gate.grade != "A"
        assert sorted(s.metric for s in result.gate.violations) == [
            "http_req_duration",
            "http_req_failed",
        ]
        assert result.worker_errors == 0

    @pytest.mark.asyncio
    async def test_raising_behaviour_is_reported(self):
        async def broken(ctx):
            raise RuntimeError("behaviour bug")

        config = _config([Stage(0, 2), Stage(3, 2)], {"http_req_failed": ["rate<0.05"]})
        behaviors = BehaviorTable([Behavior(BehaviorKind.API, broken)])
        test_run, _ = _run(config, behaviors=behaviors)
        result = await test_run.run()
        assert result.worker_errors > 0
        assert result.worker_errors == result.metrics["iterations"].count
        summary = render_summary(result_to_dict(result))
        assert f"Warning: {result.worker_errors} iteration(s) raised" in summary


class TestRunLimits:
    @pytest.mark.asyncio
    async def test_hold_runs_until_max_duration(self):
        config = _config([Stage(2, 3)], hold=True, max_duration=8)
        test_run, _ = _run(config)
        result = await test_run.run()
        assert result.duration == pytest.approx(8.0)
        assert result.metrics["vus"].value == 3

    def test_hold_without_max_duration(self):
        config = _config([Stage(2, 3)], hold=True)
        with pytest.raises(ConfigurationError, match="max_duration"):
            TestRun(config, FakeExecutor(FakeClock()))

    def test_undeclared_threshold_metric(self):
        config = _config([Stage(1, 1)], {"made_up": ["avg<1"]})
        with pytest.raises(ConfigurationError, match="not declared"):
            TestRun(config, FakeExecutor(FakeClock()))

    @pytest.mark.asyncio
    async def test_empty_profile(self):
        test_run, executor = _run(_config([], {"http_req_duration": ["p(95)<500"]}))
        result = await test_run.run()
        assert executor.calls == 0
        assert result.gate.passed is True
        assert result.gate.evaluations[0].observed is None


class TestBaselines:
    @pytest.mark.asyncio
    async def test_comparison_against_baseline(self):
        baseline = BaselineSnapshot(
            captured_at="2026-10-01T00:00:00Z",
            metrics={"http_req_duration": SummaryStats(count=100, avg=100.0)},
        )
        clock = FakeClock()
        executor = FakeExecutor(clock, latency_ms=175.0)
        test_run, _ = _run(_config([Stage(0, 2), Stage(3, 2)]), clock=clock, executor=executor, baseline=baseline)
        result = await test_run.run()
        comparison = result.baseline_comparison
        assert comparison.deltas["http_req_duration"] == pytest.approx(75.0)
        assert comparison.classification == SEVERE_DEGRADATION

    @pytest.mark.asyncio
    async def test_pre_and_post_probes(self):
        config = _config([Stage(0, 1), Stage(2, 1)], baseline_probe_iterations=2)
        test_run, executor = _run(config)
        result = await test_run.run()
        assert result.recovery is not None
        assert result.recovery.classification == "stable"
        # probe requests stay out of the run's own metrics
        probe_calls = 2 * 2 * len(config.endpoints)
        assert result.metrics["http_reqs"].value == executor.calls - probe_calls
