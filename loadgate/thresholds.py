"""Parse threshold expressions and evaluate them against metric snapshots."""

import logging
import operator
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from loadgate.metrics import VALID_STATISTICS, MetricRegistry, MetricsSnapshot
from loadgate.models import ConfigurationError, Evaluation, ThresholdSpec
from loadgate.scheduler import parse_duration

logger = logging.getLogger(__name__)

OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

CATEGORIES = ("latency", "error_rate", "throughput", "availability")

_EXPRESSION = re.compile(
    r"^\s*(?P<stat>avg|min|max|med|count|rate|value|p\(\s*(?P<pct>[0-9]*\.?[0-9]+)\s*\))"
    r"\s*(?P<op><=|>=|<|>)\s*"
    r"(?P<bound>[-+]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][-+]?[0-9]+)?)\s*$"
)
_METRIC_KEY = re.compile(r"^\s*(?P<name>[A-Za-z_][A-Za-z0-9_.\-]*)\s*(?:\{(?P<scope>[^{}]*)\})?\s*$")


class ThresholdParseError(ConfigurationError):
    """Raised when a threshold expression or metric key is malformed."""


def parse_expression(text: str) -> Tuple[str, Optional[float], str, float]:
    """Split ``"p(95)<500"`` into ``("p", 95.0, "<", 500.0)``."""
    if not isinstance(text, str):
        raise ThresholdParseError(f"threshold expression must be a string, got {text!r}")
    match = _EXPRESSION.match(text)
    if not match:
        raise ThresholdParseError(
            f"malformed threshold expression: {text!r} "
            "(expected e.g. 'p(95)<500', 'avg<=200', 'rate<0.05')"
        )
    stat = match.group("stat")
    percentile = None
    if stat.startswith("p("):
        percentile = float(match.group("pct"))
        if not 0 < percentile < 100:
            raise ThresholdParseError(
                f"percentile must be between 0 and 100 (exclusive): {text!r}"
            )
        stat = "p"
    return stat, percentile, match.group("op"), float(match.group("bound"))


def parse_metric_key(key: str) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    """Split ``"http_req_duration{phase:spike}"`` into name and sorted scope pairs."""
    match = _METRIC_KEY.match(key or "")
    if not match:
        raise ThresholdParseError(f"malformed metric key: {key!r}")
    scope = []
    raw_scope = match.group("scope")
    if raw_scope is not None and raw_scope.strip():
        for part in raw_scope.split(","):
            if ":" not in part:
                raise ThresholdParseError(
                    f"scope entries must look like tag:value in {key!r}"
                )
            tag, value = part.split(":", 1)
            tag, value = tag.strip(), value.strip()
            if not tag:
                raise ThresholdParseError(f"empty tag name in {key!r}")
            scope.append((tag, value))
    return match.group("name"), tuple(sorted(scope))


def parse_thresholds(raw: Mapping[str, Any]) -> List[ThresholdSpec]:
    """Build specs from a ``{metric_key: [expression | {threshold: ...}]}`` mapping.

    Every malformed entry is reported in a single ThresholdParseError.
    """
    if not isinstance(raw, Mapping):
        raise ThresholdParseError("'thresholds' must be a mapping of metric keys to lists")

    specs: List[ThresholdSpec] = []
    errors: List[str] = []
    for key, entries in raw.items():
        try:
            name, scope = parse_metric_key(key)
        except ThresholdParseError as exc:
            errors.append(str(exc))
            continue
        if isinstance(entries, (str, Mapping)):
            entries = [entries]
        if not isinstance(entries, list):
            errors.append(f"thresholds[{key!r}] must be a list")
            continue
        for i, entry in enumerate(entries):
            try:
                specs.append(_parse_entry(name, scope, entry))
            except ThresholdParseError as exc:
                errors.append(f"thresholds[{key!r}][{i}]: {exc}")

    if errors:
        raise ThresholdParseError(
            "threshold validation failed:\n  - " + "\n  - ".join(errors)
        )
    return specs


def _parse_entry(name: str, scope, entry) -> ThresholdSpec:
    abort_on_fail = False
    delay = 0.0
    category = None
    if isinstance(entry, Mapping):
        expression = entry.get("threshold")
        abort_on_fail = bool(entry.get("abortOnFail", entry.get("abort_on_fail", False)))
        delay_raw = entry.get("delayAbortEval", entry.get("delay_abort_eval", 0))
        category = entry.get("category")
        if category is not None and category not in CATEGORIES:
            raise ThresholdParseError(
                f"unknown category {category!r} (expected one of {', '.join(CATEGORIES)})"
            )
        try:
            delay = parse_duration(delay_raw)
        except ConfigurationError as exc:
            raise ThresholdParseError(f"delayAbortEval: {exc}") from exc
    else:
        expression = entry

    stat, percentile, op, bound = parse_expression(expression)
    return ThresholdSpec(
        metric=name,
        statistic=stat,
        percentile=percentile,
        operator=op,
        bound=bound,
        scope=scope,
        abort_on_fail=abort_on_fail,
        delay_abort_eval=delay,
        category=category,
        source=expression.strip(),
    )


def validate_against(specs: Sequence[ThresholdSpec], registry: MetricRegistry) -> None:
    """Check every spec names a declared metric and a statistic it supports."""
    errors = []
    for spec in specs:
        kind = registry.kind(spec.metric)
        if kind is None:
            errors.append(f"{spec.describe()}: metric {spec.metric!r} is not declared")
            continue
        if spec.statistic not in VALID_STATISTICS[kind]:
            allowed = ", ".join(sorted(VALID_STATISTICS[kind]))
            errors.append(
                f"{spec.describe()}: statistic {spec.statistic_label!r} is not valid "
                f"for {kind.value} metrics (allowed: {allowed})"
            )
    if errors:
        raise ThresholdParseError(
            "threshold validation failed:\n  - " + "\n  - ".join(errors)
        )


def evaluate(spec: ThresholdSpec, snapshot: MetricsSnapshot) -> Evaluation:
    """Evaluate one spec. A scope without samples passes vacuously."""
    observed = snapshot.query(
        spec.metric, spec.statistic, scope=spec.scope_tags, percentile=spec.percentile
    )
    if observed is None:
        return Evaluation(spec=spec, ok=True, observed=None)
    ok = OPERATORS[spec.operator](observed, spec.bound)
    return Evaluation(spec=spec, ok=ok, observed=observed)


def evaluate_all(specs: Sequence[ThresholdSpec], snapshot: MetricsSnapshot) -> List[Evaluation]:
    return [evaluate(spec, snapshot) for spec in specs]


class ThresholdEvaluator:
    """Holds the run's specs and answers mid-run abort checks."""

    def __init__(self, specs: Sequence[ThresholdSpec]):
        self.specs = tuple(specs)
        self.abort_specs = tuple(s for s in self.specs if s.abort_on_fail)

    def evaluate_all(self, snapshot: MetricsSnapshot) -> List[Evaluation]:
        return evaluate_all(self.specs, snapshot)

    def check_abort(self, snapshot: MetricsSnapshot, elapsed: float) -> List[Evaluation]:
        """Failing abort-on-fail evaluations whose evaluation delay has passed."""
        failures = []
        for spec in self.abort_specs:
            if elapsed < spec.delay_abort_eval:
                continue
            result = evaluate(spec, snapshot)
            if not result.ok:
                logger.warning(
                    "abort threshold failed at %.1fs: %s (observed %.4g)",
                    elapsed,
                    spec.describe(),
                    result.observed,
                )
                failures.append(result)
        return failures


def thresholds_to_dict(specs: Sequence[ThresholdSpec]) -> Dict[str, List[Any]]:
    """Inverse of parse_thresholds, used when echoing a resolved configuration."""
    out: Dict[str, List[Any]] = {}
    for spec in specs:
        expression = f"{spec.statistic_label}{spec.operator}{spec.bound:g}"
        if spec.abort_on_fail or spec.delay_abort_eval or spec.category:
            entry: Any = {"threshold": expression, "abortOnFail": spec.abort_on_fail}
            if spec.delay_abort_eval:
                entry["delayAbortEval"] = spec.delay_abort_eval
            if spec.category:
                entry["category"] = spec.category
        else:
            entry = expression
        out.setdefault(spec.key, []).append(entry)
    return out
