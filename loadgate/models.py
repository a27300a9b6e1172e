"""Data models for load profiles, samples, thresholds, gate results, and run artifacts."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ConfigurationError(Exception):
    """Raised when a run configuration is invalid. Fatal before any load starts."""


class MetricKind(str, Enum):
    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


@dataclass(frozen=True)
class Stage:
    duration: float  # seconds
    target: int
    name: Optional[str] = None


@dataclass(frozen=True)
class PhaseRule:
    tag: str
    min_concurrency: Optional[int] = None
    max_concurrency: Optional[int] = None
    start: Optional[float] = None
    end: Optional[float] = None


@dataclass(frozen=True)
class Sample:
    metric: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    timestamp: float = 0.0


@dataclass(frozen=True)
class ThresholdSpec:
    metric: str
    statistic: str  # "avg", "min", "max", "med", "count", "rate", "value", "p"
    operator: str  # "<", "<=", ">", ">="
    bound: float
    percentile: Optional[float] = None
    scope: Tuple[Tuple[str, str], ...] = ()
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0
    category: Optional[str] = None
    source: str = ""

    @property
    def scope_tags(self) -> Dict[str, str]:
        return dict(self.scope)

    @property
    def statistic_label(self) -> str:
        if self.statistic == "p":
            return f"p({self.percentile:g})"
        return self.statistic

    @property
    def key(self) -> str:
        if not self.scope:
            return self.metric
        inner = ",".join(f"{k}:{v}" for k, v in self.scope)
        return f"{self.metric}{{{inner}}}"

    def describe(self) -> str:
        return f"{self.key}: {self.statistic_label}{self.operator}{self.bound:g}"


@dataclass
class Evaluation:
    spec: ThresholdSpec
    ok: bool
    observed: Optional[float] = None  # None when no samples matched the scope


@dataclass
class QualityGateResult:
    passed: bool
    violations: List[ThresholdSpec] = field(default_factory=list)
    composite_score: float = 100.0
    grade: str = "A"
    aborted: bool = False
    evaluations: List[Evaluation] = field(default_factory=list)
    category_scores: Dict[str, float] = field(default_factory=dict)


@dataclass
class SummaryStats:
    count: int = 0
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    med: Optional[float] = None
    p90: Optional[float] = None
    p95: Optional[float] = None
    p99: Optional[float] = None
    rate: Optional[float] = None
    value: Optional[float] = None


@dataclass
class BaselineSnapshot:
    captured_at: str
    metrics: Dict[str, SummaryStats] = field(default_factory=dict)


@dataclass
class BaselineComparison:
    statistic: str
    deltas: Dict[str, Optional[float]] = field(default_factory=dict)
    classification: Optional[str] = None


@dataclass
class RequestResult:
    status: int
    latency_ms: float
    bytes_received: int = 0
    bytes_sent: int = 0
    error: Optional[str] = None
    body: Optional[bytes] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status < 400


@dataclass(frozen=True)
class ThinkTime:
    min_seconds: float = 1.0
    max_seconds: float = 3.0
    jitter: float = 0.0  # fraction of the drawn value, e.g. 0.3 = +/-30%


@dataclass(frozen=True)
class RunConfig:
    name: str = "load-test"
    profile: Tuple[Stage, ...] = ()
    custom_metrics: Tuple[Tuple[str, MetricKind], ...] = ()
    thresholds: Tuple[ThresholdSpec, ...] = ()
    phase_rules: Tuple[PhaseRule, ...] = ()
    weights: Tuple[Tuple[str, float], ...] = (
        ("latency", 0.4),
        ("error_rate", 0.3),
        ("throughput", 0.2),
        ("availability", 0.1),
    )
    grace_period: float = 30.0
    control_loop_tick: float = 1.0
    hold: bool = False
    base_url: str = "http://localhost:8001"
    endpoints: Tuple[Tuple[str, str], ...] = (
        ("frontend", "/"),
        ("health", "/health"),
        ("quotes", "/api/quotes"),
        ("random_quote", "/api/quotes/random"),
        ("categories", "/api/quotes/categories"),
    )
    behavior_mix: Tuple[Tuple[str, float], ...] = (
        ("casual", 0.4),
        ("active", 0.3),
        ("power", 0.2),
        ("background", 0.1),
    )
    behavior_selection: str = "round-robin"  # or "weighted"
    think_time: ThinkTime = ThinkTime()
    request_timeout: float = 30.0
    seed: int = 0
    baseline_probe_iterations: int = 0
    max_duration: Optional[float] = None

    @property
    def weight_map(self) -> Dict[str, float]:
        return dict(self.weights)

    @property
    def endpoint_map(self) -> Dict[str, str]:
        return dict(self.endpoints)


@dataclass
class RunResult:
    started_at: str
    duration: float
    aborted: bool
    gate: QualityGateResult
    metrics: Dict[str, SummaryStats] = field(default_factory=dict)
    abort_reason: Optional[str] = None
    stages_completed: int = 0
    stages_total: int = 0
    baseline_comparison: Optional[BaselineComparison] = None
    recovery: Optional[BaselineComparison] = None
    dropped_samples: int = 0
    worker_errors: int = 0


@dataclass
class RunEvent:
    ts: str
    config: str
    stages: List[str] = field(default_factory=list)
    passed: bool = False
    score: float = 0.0
    grade: str = "F"
    aborted: bool = False
    outcome: str = "gate-failed"
