"""Run orchestration: control loop, abort-on-fail checks, and the final verdict."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from loadgate import baseline as baselines
from loadgate.behaviors import BehaviorTable
from loadgate.executor import RequestExecutor
from loadgate.gate import aggregate
from loadgate.metrics import MetricRegistry
from loadgate.models import BaselineSnapshot, ConfigurationError, RunConfig, RunResult
from loadgate.phases import PhaseClassifier
from loadgate.pool import VirtualWorkerPool
from loadgate.scheduler import StageScheduler
from loadgate.thresholds import ThresholdEvaluator, validate_against

logger = logging.getLogger(__name__)


class TestRun:
    """One load test run from start to verdict.

    Every collaborator is built from the immutable ``RunConfig`` up front, so
    configuration problems surface before any worker is spawned.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        config: RunConfig,
        executor: RequestExecutor,
        behaviors: Optional[BehaviorTable] = None,
        registry: Optional[MetricRegistry] = None,
        baseline: Optional[BaselineSnapshot] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if config.hold and config.max_duration is None:
            raise ConfigurationError("'hold' requires 'max_duration' so the run can end")

        self.config = config
        self.executor = executor
        self.baseline = baseline
        self.clock = clock
        self.sleep = sleep

        self.scheduler = StageScheduler(config.profile, hold=config.hold)
        if config.phase_rules:
            self.classifier = PhaseClassifier(config.phase_rules)
        else:
            self.classifier = PhaseClassifier.from_stages(self.scheduler)

        self.registry = registry if registry is not None else MetricRegistry()
        self.registry.declare_builtin_metrics()
        for name, kind in config.custom_metrics:
            self.registry.declare(name, kind)
        validate_against(config.thresholds, self.registry)

        self.evaluator = ThresholdEvaluator(config.thresholds)
        self.behaviors = behaviors or BehaviorTable.from_config(config)

        self._started: Optional[float] = None
        self._target = 0

    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return self.clock() - self._started

    def current_phase(self) -> str:
        return self.classifier.classify(self.elapsed(), self._target)

    async def run(self) -> RunResult:
        started_at = baselines.utc_now()
        pre_probe = None
        if self.config.baseline_probe_iterations:
            pre_probe = await baselines.run_probe(
                self.executor, self.config, self.config.baseline_probe_iterations, label="pre-run"
            )

        pool = VirtualWorkerPool(
            self.registry,
            self.executor,
            self.behaviors,
            self.config,
            phase_of=self.current_phase,
            clock=self.clock,
        )
        logger.info(
            "starting %s: %d stage(s), %.1fs, up to %d worker(s)",
            self.config.name,
            len(self.config.profile),
            self.scheduler.total_duration,
            self.scheduler.max_concurrency,
        )

        self._started = self.clock()
        aborted = False
        abort_reason = None
        abort_specs = []
        stopped_at = 0.0
        try:
            while True:
                elapsed = self.elapsed()
                if self.scheduler.is_finished(elapsed):
                    break
                if self.config.max_duration is not None and elapsed >= self.config.max_duration:
                    logger.info("max duration of %.1fs reached", self.config.max_duration)
                    break

                self._target = self.scheduler.concurrency_at(elapsed)
                pool.resize(self._target)
                now = time.time()
                self.registry.add("vus", pool.live, timestamp=now)
                self.registry.add("vus_max", pool.max_live, timestamp=now)

                if self.evaluator.abort_specs:
                    failures = self.evaluator.check_abort(self.registry.snapshot(elapsed), elapsed)
                    if failures:
                        aborted = True
                        abort_specs = [f.spec for f in failures]
                        abort_reason = "threshold failed: " + "; ".join(
                            s.describe() for s in abort_specs
                        )
                        logger.warning("aborting run at %.1fs (%s)", elapsed, abort_reason)
                        break

                await self.sleep(self.config.control_loop_tick)
        finally:
            stopped_at = self.elapsed()
            self._target = 0
            await pool.stop()

        duration = self.elapsed()
        self.registry.freeze()
        snapshot = self.registry.snapshot(duration)
        if self.registry.late_samples:
            logger.debug("%d sample(s) arrived after the registry froze", self.registry.late_samples)
        worker_errors = int(snapshot.query("worker_errors", "count") or 0)
        if worker_errors:
            logger.warning("%d iteration(s) raised during the run", worker_errors)

        kinds = {name: snapshot.kind(name) for name in snapshot.metric_names()}
        evaluations = self.evaluator.evaluate_all(snapshot)
        gate = aggregate(
            evaluations,
            weights=self.config.weight_map,
            aborted=aborted,
            abort_violations=abort_specs,
            kinds=kinds,
        )

        recovery = None
        if pre_probe is not None:
            post_probe = await baselines.run_probe(
                self.executor, self.config, self.config.baseline_probe_iterations, label="post-run"
            )
            recovery = baselines.compare(pre_probe, post_probe)

        comparison = None
        if self.baseline is not None:
            comparison = baselines.compare(self.baseline, baselines.capture(snapshot))

        stages_completed = self.scheduler.stages_completed(stopped_at)
        if not aborted and self.scheduler.is_finished(stopped_at):
            stages_completed = len(self.config.profile)

        logger.info(
            "run finished in %.1fs: passed=%s score=%.1f grade=%s",
            duration,
            gate.passed,
            gate.composite_score,
            gate.grade,
        )
        return RunResult(
            started_at=started_at,
            duration=duration,
            aborted=aborted,
            abort_reason=abort_reason,
            gate=gate,
            metrics=snapshot.summaries(),
            stages_completed=stages_completed,
            stages_total=len(self.config.profile),
            baseline_comparison=comparison,
            recovery=recovery,
            dropped_samples=snapshot.dropped_samples,
            worker_errors=worker_errors,
        )


def run(
    config: RunConfig,
    executor: RequestExecutor,
    behaviors: Optional[BehaviorTable] = None,
    baseline: Optional[BaselineSnapshot] = None,
) -> RunResult:
    """Blocking helper for callers outside an event loop."""
    return asyncio.run(TestRun(config, executor, behaviors=behaviors, baseline=baseline).run())
