"""Combine threshold evaluations into a pass/fail verdict, a composite score and a grade."""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loadgate.models import Evaluation, MetricKind, QualityGateResult, ThresholdSpec

DEFAULT_WEIGHTS: Dict[str, float] = {
    "latency": 0.4,
    "error_rate": 0.3,
    "throughput": 0.2,
    "availability": 0.1,
}

# (grade, minimum composite score), checked in order
GRADE_BOUNDARIES: Tuple[Tuple[str, float], ...] = (
    ("A", 90.0),
    ("B", 80.0),
    ("C", 70.0),
    ("D", 60.0),
)
FAILING_GRADE = "F"

_TREND_STATISTICS = {"avg", "min", "max", "med", "p"}


def categorize(spec: ThresholdSpec, kind: Optional[MetricKind] = None) -> str:
    """Which scoring category a spec contributes to."""
    if spec.category:
        return spec.category
    upper_bound = spec.operator in ("<", "<=")
    if kind == MetricKind.RATE or (kind is None and spec.statistic == "rate" and spec.bound <= 1):
        return "error_rate" if upper_bound else "availability"
    if kind == MetricKind.GAUGE:
        return "availability"
    if kind == MetricKind.COUNTER or spec.statistic in ("rate", "count"):
        return "throughput"
    if spec.statistic in _TREND_STATISTICS:
        return "latency"
    return "availability"


def score(evaluation: Evaluation) -> float:
    """0-100 score for one evaluation: 100 when met, proportional shortfall otherwise."""
    observed = evaluation.observed
    if observed is None or evaluation.ok:
        return 100.0
    bound = evaluation.spec.bound
    if evaluation.spec.operator in ("<", "<="):
        raw = 100.0 * bound / observed if observed > 0 else 0.0
    else:
        raw = 100.0 * observed / bound if bound > 0 else 0.0
    return _clamp(raw)


def grade_for(composite: float, boundaries: Sequence[Tuple[str, float]] = GRADE_BOUNDARIES) -> str:
    for grade, minimum in boundaries:
        if composite >= minimum:
            return grade
    return FAILING_GRADE


def aggregate(
    evaluations: Sequence[Evaluation],
    weights: Optional[Mapping[str, float]] = None,
    aborted: bool = False,
    abort_violations: Iterable[ThresholdSpec] = (),
    kinds: Optional[Mapping[str, MetricKind]] = None,
) -> QualityGateResult:
    """Build the QualityGateResult for a set of evaluations.

    Categories without any spec are left out of the weighted mean, so a run
    with latency thresholds only is scored on latency alone.
    """
    weights = dict(DEFAULT_WEIGHTS if weights is None else weights)
    kinds = kinds or {}

    violations: List[ThresholdSpec] = [e.spec for e in evaluations if not e.ok]
    for spec in abort_violations:
        if spec not in violations:
            violations.append(spec)

    per_category: Dict[str, List[float]] = {}
    for evaluation in evaluations:
        category = categorize(evaluation.spec, kinds.get(evaluation.spec.metric))
        per_category.setdefault(category, []).append(score(evaluation))

    category_scores = {
        category: sum(values) / len(values) for category, values in per_category.items()
    }

    weighted = 0.0
    total_weight = 0.0
    for category, value in sorted(category_scores.items()):
        weight = weights.get(category, 0.0)
        weighted += weight * value
        total_weight += weight
    if total_weight > 0:
        composite = weighted / total_weight
    elif category_scores:
        # every category present carries zero weight; score them equally
        composite = sum(category_scores.values()) / len(category_scores)
    else:
        composite = 100.0
    composite = round(_clamp(composite), 4)

    return QualityGateResult(
        passed=not violations and not aborted,
        violations=violations,
        composite_score=composite,
        grade=grade_for(composite),
        aborted=aborted,
        evaluations=list(evaluations),
        category_scores=category_scores,
    )


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))
