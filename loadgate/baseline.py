"""Baseline snapshots and percentage-change comparison against them."""

import dataclasses
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from loadgate.executor import RequestExecutor
from loadgate.metrics import MetricRegistry, MetricsSnapshot
from loadgate.models import (
    BaselineComparison,
    BaselineSnapshot,
    ConfigurationError,
    RequestResult,
    RunConfig,
    SummaryStats,
)

logger = logging.getLogger(__name__)

STABLE = "stable"
MINOR_VARIATION = "minor variation"
MODERATE_DEGRADATION = "moderate degradation"
SEVERE_DEGRADATION = "severe degradation"

DEFAULT_BASELINE_METRICS = ("http_req_duration", "http_req_failed", "iteration_duration")


@dataclass(frozen=True)
class RecoveryThresholds:
    """Upper bounds (absolute percent change) for each classification."""

    stable: float = 10.0
    minor: float = 25.0
    moderate: float = 50.0


DEFAULT_THRESHOLDS = RecoveryThresholds()


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def capture(snapshot: MetricsSnapshot, metrics: Optional[Iterable[str]] = None) -> BaselineSnapshot:
    """Summary statistics for the given metrics (all metrics with samples by default)."""
    return BaselineSnapshot(captured_at=utc_now(), metrics=snapshot.summaries(metrics))


def percent_delta(baseline: float, current: float) -> Optional[float]:
    """``(current - baseline) / baseline * 100``; None when the baseline is zero."""
    if baseline == 0:
        return None
    return (current - baseline) / baseline * 100.0


def classify(delta: float, thresholds: RecoveryThresholds = DEFAULT_THRESHOLDS) -> str:
    magnitude = abs(delta)
    if magnitude < thresholds.stable:
        return STABLE
    if magnitude < thresholds.minor:
        return MINOR_VARIATION
    if magnitude <= thresholds.moderate:
        return MODERATE_DEGRADATION
    return SEVERE_DEGRADATION


def compare(
    baseline: BaselineSnapshot,
    current: BaselineSnapshot,
    statistic: str = "avg",
    thresholds: RecoveryThresholds = DEFAULT_THRESHOLDS,
) -> BaselineComparison:
    """Percent change of ``statistic`` for every metric present in both snapshots.

    The overall classification follows the largest absolute change; it is
    None when no metric could be compared.
    """
    deltas: Dict[str, Optional[float]] = {}
    for name, before in sorted(baseline.metrics.items()):
        after = current.metrics.get(name)
        if after is None:
            continue
        before_value = getattr(before, statistic)
        after_value = getattr(after, statistic)
        if before_value is None or after_value is None:
            continue
        deltas[name] = percent_delta(before_value, after_value)

    comparable = [abs(d) for d in deltas.values() if d is not None]
    classification = classify(max(comparable), thresholds) if comparable else None
    return BaselineComparison(statistic=statistic, deltas=deltas, classification=classification)


# -- persistence -------------------------------------------------------------------


def snapshot_to_dict(snapshot: BaselineSnapshot) -> dict:
    return {
        "captured_at": snapshot.captured_at,
        "metrics": {name: dataclasses.asdict(stats) for name, stats in snapshot.metrics.items()},
    }


def snapshot_from_dict(raw: dict) -> BaselineSnapshot:
    """Accepts a saved snapshot or a saved run result artifact."""
    if not isinstance(raw, dict) or not isinstance(raw.get("metrics"), dict):
        raise ConfigurationError("baseline must be an object with a 'metrics' mapping")
    known = {f.name for f in dataclasses.fields(SummaryStats)}
    metrics = {}
    for name, stats in raw["metrics"].items():
        if not isinstance(stats, dict):
            raise ConfigurationError(f"baseline metrics[{name!r}] must be an object")
        metrics[name] = SummaryStats(**{k: v for k, v in stats.items() if k in known})
    captured_at = raw.get("captured_at") or raw.get("started_at") or ""
    return BaselineSnapshot(captured_at=captured_at, metrics=metrics)


def save_baseline(snapshot: BaselineSnapshot, path: str) -> None:
    parent = os.path.dirname(path)
    if parent and not os.path.isdir(parent):
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as f:
        json.dump(snapshot_to_dict(snapshot), f, indent=2)
        f.write("\n")


def load_baseline(path: str) -> BaselineSnapshot:
    if not os.path.isfile(path):
        raise ConfigurationError(f"baseline file not found: {path}")
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"failed to parse baseline {path}: {exc}") from exc
    return snapshot_from_dict(raw)


# -- probes ------------------------------------------------------------------------


async def run_probe(
    executor: RequestExecutor,
    config: RunConfig,
    iterations: int,
    label: str = "probe",
) -> BaselineSnapshot:
    """Hit every configured endpoint sequentially ``iterations`` times and summarise.

    Used before the profile starts and after teardown so the two snapshots
    can be compared for recovery.
    """
    registry = MetricRegistry(locked=False)
    registry.declare_builtin_metrics()
    base = config.base_url.rstrip("/")
    started = time.monotonic()
    for _ in range(iterations):
        for name, path in config.endpoints:
            begin = time.perf_counter()
            try:
                result = await executor.execute(
                    "GET", base + "/" + path.lstrip("/"), timeout=config.request_timeout
                )
            except Exception as exc:
                result = RequestResult(
                    status=0,
                    latency_ms=(time.perf_counter() - begin) * 1000.0,
                    error=f"{exc.__class__.__name__}: {exc}",
                )
            registry.add("http_reqs", 1, endpoint=name, phase=label)
            registry.add("http_req_duration", result.latency_ms, endpoint=name, phase=label)
            registry.add("http_req_failed", not result.ok, endpoint=name, phase=label)
    snapshot = registry.snapshot(time.monotonic() - started)
    captured = capture(snapshot, ("http_req_duration", "http_req_failed"))
    for name, _ in config.endpoints:
        stats = snapshot.summary("http_req_duration", {"endpoint": name})
        if stats.count:
            captured.metrics[f"http_req_duration{{endpoint:{name}}}"] = stats
    logger.info("%s captured %d metric(s) over %d iteration(s)", label, len(captured.metrics), iterations)
    return captured
