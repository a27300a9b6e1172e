"""Per-run metric accumulation: counters, rates, trends and gauges.

A :class:`MetricRegistry` is created for every run and handed to the workers
and the evaluator; there is no module-level registry. Each metric keeps one
sink per distinct tag set so tag-scoped queries can merge exactly the series
whose tags are a superset of the requested scope.

Merging is exact: sums are carried as Shewchuk partials and trend
distributions as bucket counts, so combining the same samples in any order or
sharding yields bit-identical statistics.

Percentiles come from a logarithmic-bucket histogram with 1% relative
accuracy (DDSketch-style). Results are clamped to the observed min/max, which
keeps ``p50 <= p95 <= p99 <= max`` and makes constant series exact.
"""

import contextlib
import logging
import math
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from loadgate.models import ConfigurationError, MetricKind, Sample, SummaryStats

logger = logging.getLogger(__name__)

RELATIVE_ACCURACY = 0.01
_MIN_POSITIVE = 1e-9

VALID_STATISTICS = {
    MetricKind.TREND: {"avg", "min", "max", "med", "p", "count"},
    MetricKind.RATE: {"rate", "count"},
    MetricKind.COUNTER: {"count", "rate"},
    MetricKind.GAUGE: {"value", "min", "max", "count"},
}

BUILTIN_METRICS = (
    ("http_reqs", MetricKind.COUNTER),
    ("http_req_duration", MetricKind.TREND),
    ("http_req_failed", MetricKind.RATE),
    ("data_received", MetricKind.COUNTER),
    ("data_sent", MetricKind.COUNTER),
    ("iterations", MetricKind.COUNTER),
    ("iteration_duration", MetricKind.TREND),
    ("checks", MetricKind.RATE),
    ("vus", MetricKind.GAUGE),
    ("vus_max", MetricKind.GAUGE),
    ("worker_errors", MetricKind.COUNTER),
)

SeriesKey = Tuple[Tuple[str, str], ...]


class UnknownMetricError(LookupError):
    """Raised when a sample or query names a metric that was never declared."""


# -- exact summation -----------------------------------------------------------


class ExactSum:
    """Running float sum kept as non-overlapping partials (Shewchuk)."""

    __slots__ = ("partials",)

    def __init__(self, partials: Optional[List[float]] = None):
        self.partials: List[float] = list(partials or [])

    def add(self, x: float) -> None:
        i = 0
        partials = self.partials
        for y in partials:
            if abs(x) < abs(y):
                x, y = y, x
            hi = x + y
            lo = y - (hi - x)
            if lo:
                partials[i] = lo
                i += 1
            x = hi
        partials[i:] = [x]

    def merge(self, other: "ExactSum") -> None:
        for p in other.partials:
            self.add(p)

    @property
    def value(self) -> float:
        return math.fsum(self.partials)

    def copy(self) -> "ExactSum":
        return ExactSum(self.partials)


# -- percentile sketch ---------------------------------------------------------


class LogHistogram:
    """Mergeable quantile sketch with bounded relative error."""

    __slots__ = ("positive", "negative", "zeros", "count")

    _gamma = (1 + RELATIVE_ACCURACY) / (1 - RELATIVE_ACCURACY)
    _log_gamma = math.log(_gamma)

    def __init__(self):
        self.positive: Dict[int, int] = {}
        self.negative: Dict[int, int] = {}
        self.zeros = 0
        self.count = 0

    def _index(self, magnitude: float) -> int:
        return int(math.ceil(math.log(magnitude) / self._log_gamma))

    def _value(self, index: int) -> float:
        return 2.0 * self._gamma ** index / (self._gamma + 1)

    def add(self, value: float) -> None:
        self.count += 1
        if value > _MIN_POSITIVE:
            i = self._index(value)
            self.positive[i] = self.positive.get(i, 0) + 1
        elif value < -_MIN_POSITIVE:
            i = self._index(-value)
            self.negative[i] = self.negative.get(i, 0) + 1
        else:
            self.zeros += 1

    def merge(self, other: "LogHistogram") -> None:
        for i, n in other.positive.items():
            self.positive[i] = self.positive.get(i, 0) + n
        for i, n in other.negative.items():
            self.negative[i] = self.negative.get(i, 0) + n
        self.zeros += other.zeros
        self.count += other.count

    def quantile(self, q: float) -> Optional[float]:
        if self.count == 0:
            return None
        rank = q * (self.count - 1)
        seen = 0
        for i in sorted(self.negative, reverse=True):
            seen += self.negative[i]
            if seen > rank:
                return -self._value(i)
        seen += self.zeros
        if seen > rank:
            return 0.0
        for i in sorted(self.positive):
            seen += self.positive[i]
            if seen > rank:
                return self._value(i)
        return self._value(max(self.positive)) if self.positive else 0.0

    def copy(self) -> "LogHistogram":
        h = LogHistogram()
        h.positive = dict(self.positive)
        h.negative = dict(self.negative)
        h.zeros = self.zeros
        h.count = self.count
        return h


# -- sinks ---------------------------------------------------------------------


class CounterSink:
    kind = MetricKind.COUNTER

    def __init__(self):
        self.count = 0
        self.total = ExactSum()

    def add(self, value: float, timestamp: float) -> None:
        self.count += 1
        self.total.add(value)

    def merge(self, other: "CounterSink") -> None:
        self.count += other.count
        self.total.merge(other.total)

    def copy(self) -> "CounterSink":
        s = CounterSink()
        s.count = self.count
        s.total = self.total.copy()
        return s

    def stat(self, statistic: str, percentile: Optional[float], duration: float) -> Optional[float]:
        if statistic == "count":
            return self.total.value
        if statistic == "rate":
            return self.total.value / duration if duration > 0 else None
        raise ValueError(f"statistic {statistic!r} not supported for counters")

    def summary(self, duration: float) -> SummaryStats:
        total = self.total.value
        return SummaryStats(
            count=self.count,
            value=total,
            rate=total / duration if duration > 0 else None,
        )


class RateSink:
    kind = MetricKind.RATE

    def __init__(self):
        self.count = 0
        self.trues = 0

    def add(self, value: float, timestamp: float) -> None:
        self.count += 1
        if value:
            self.trues += 1

    def merge(self, other: "RateSink") -> None:
        self.count += other.count
        self.trues += other.trues

    def copy(self) -> "RateSink":
        s = RateSink()
        s.count = self.count
        s.trues = self.trues
        return s

    def stat(self, statistic: str, percentile: Optional[float], duration: float) -> Optional[float]:
        if statistic == "rate":
            return self.trues / self.count if self.count else None
        if statistic == "count":
            return float(self.count)
        raise ValueError(f"statistic {statistic!r} not supported for rates")

    def summary(self, duration: float) -> SummaryStats:
        return SummaryStats(
            count=self.count,
            rate=self.trues / self.count if self.count else None,
            value=float(self.trues),
        )


class TrendSink:
    kind = MetricKind.TREND

    def __init__(self):
        self.count = 0
        self.total = ExactSum()
        self.min: Optional[float] = None
        self.max: Optional[float] = None
        self.histogram = LogHistogram()

    def add(self, value: float, timestamp: float) -> None:
        self.count += 1
        self.total.add(value)
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)
        self.histogram.add(value)

    def merge(self, other: "TrendSink") -> None:
        if not other.count:
            return
        self.count += other.count
        self.total.merge(other.total)
        self.min = other.min if self.min is None else min(self.min, other.min)
        self.max = other.max if self.max is None else max(self.max, other.max)
        self.histogram.merge(other.histogram)

    def copy(self) -> "TrendSink":
        s = TrendSink()
        s.count = self.count
        s.total = self.total.copy()
        s.min = self.min
        s.max = self.max
        s.histogram = self.histogram.copy()
        return s

    def percentile(self, p: float) -> Optional[float]:
        estimate = self.histogram.quantile(p / 100.0)
        if estimate is None:
            return None
        return min(max(estimate, self.min), self.max)

    def stat(self, statistic: str, percentile: Optional[float], duration: float) -> Optional[float]:
        if statistic == "count":
            return float(self.count)
        if not self.count:
            return None
        if statistic == "avg":
            return self.total.value / self.count
        if statistic == "min":
            return self.min
        if statistic == "max":
            return self.max
        if statistic == "med":
            return self.percentile(50)
        if statistic == "p":
            return self.percentile(percentile)
        raise ValueError(f"statistic {statistic!r} not supported for trends")

    def summary(self, duration: float) -> SummaryStats:
        if not self.count:
            return SummaryStats()
        return SummaryStats(
            count=self.count,
            avg=self.total.value / self.count,
            min=self.min,
            max=self.max,
            med=self.percentile(50),
            p90=self.percentile(90),
            p95=self.percentile(95),
            p99=self.percentile(99),
        )


class GaugeSink:
    kind = MetricKind.GAUGE

    def __init__(self):
        self.count = 0
        self.last: Optional[Tuple[float, float]] = None  # (timestamp, value)
        self.min: Optional[float] = None
        self.max: Optional[float] = None

    def add(self, value: float, timestamp: float) -> None:
        self.count += 1
        candidate = (timestamp, value)
        # latest timestamp wins; equal timestamps keep the larger value
        if self.last is None or candidate > self.last:
            self.last = candidate
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)

    def merge(self, other: "GaugeSink") -> None:
        if not other.count:
            return
        self.count += other.count
        if self.last is None or other.last > self.last:
            self.last = other.last
        self.min = other.min if self.min is None else min(self.min, other.min)
        self.max = other.max if self.max is None else max(self.max, other.max)

    def copy(self) -> "GaugeSink":
        s = GaugeSink()
        s.count = self.count
        s.last = self.last
        s.min = self.min
        s.max = self.max
        return s

    def stat(self, statistic: str, percentile: Optional[float], duration: float) -> Optional[float]:
        if statistic == "count":
            return float(self.count)
        if not self.count:
            return None
        if statistic == "value":
            return self.last[1]
        if statistic == "min":
            return self.min
        if statistic == "max":
            return self.max
        raise ValueError(f"statistic {statistic!r} not supported for gauges")

    def summary(self, duration: float) -> SummaryStats:
        if not self.count:
            return SummaryStats()
        return SummaryStats(
            count=self.count,
            value=self.last[1],
            min=self.min,
            max=self.max,
        )


_SINKS = {
    MetricKind.COUNTER: CounterSink,
    MetricKind.RATE: RateSink,
    MetricKind.TREND: TrendSink,
    MetricKind.GAUGE: GaugeSink,
}


def _series_key(tags: Optional[Dict[str, str]]) -> SeriesKey:
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


# -- registry ------------------------------------------------------------------


class MetricRegistry:
    """Concurrency-safe store of every metric recorded during one run."""

    def __init__(self, locked: bool = True):
        self._lock = threading.Lock() if locked else contextlib.nullcontext()
        self._kinds: Dict[str, MetricKind] = {}
        self._series: Dict[str, Dict[SeriesKey, object]] = {}
        self._frozen = False
        self.dropped_samples = 0
        self.late_samples = 0

    # declarations

    def declare(self, name: str, kind: MetricKind) -> None:
        kind = MetricKind(kind)
        with self._lock:
            existing = self._kinds.get(name)
            if existing is not None and existing != kind:
                raise ConfigurationError(
                    f"metric {name!r} already declared as {existing.value}, not {kind.value}"
                )
            self._kinds[name] = kind
            self._series.setdefault(name, {})

    def counter(self, name: str) -> None:
        self.declare(name, MetricKind.COUNTER)

    def rate(self, name: str) -> None:
        self.declare(name, MetricKind.RATE)

    def trend(self, name: str) -> None:
        self.declare(name, MetricKind.TREND)

    def gauge(self, name: str) -> None:
        self.declare(name, MetricKind.GAUGE)

    def declare_builtin_metrics(self) -> None:
        for name, kind in BUILTIN_METRICS:
            self.declare(name, kind)

    def kind(self, name: str) -> Optional[MetricKind]:
        return self._kinds.get(name)

    @property
    def frozen(self) -> bool:
        return self._frozen

    # writes

    def record(self, sample: Sample) -> bool:
        """Add one sample. Returns False when the sample was dropped."""
        kind = self._kinds.get(sample.metric)
        if kind is None:
            raise UnknownMetricError(f"metric {sample.metric!r} is not declared")

        value = sample.value
        if isinstance(value, bool):
            value = float(value)
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            with self._lock:
                self.dropped_samples += 1
            logger.warning("dropping non-finite sample for %s: %r", sample.metric, value)
            return False

        key = _series_key(sample.tags)
        with self._lock:
            if self._frozen:
                self.late_samples += 1
                return False
            series = self._series[sample.metric]
            sink = series.get(key)
            if sink is None:
                sink = series[key] = _SINKS[kind]()
            sink.add(float(value), sample.timestamp)
        return True

    def add(self, name: str, value: float, /, timestamp: float = 0.0, **tags) -> bool:
        """Record ``value`` for ``name``. Keyword arguments other than ``timestamp`` become tags."""
        return self.record(Sample(metric=name, value=value, tags=tags, timestamp=timestamp))

    def shard(self) -> "MetricRegistry":
        """An unlocked, empty registry with the same declarations, for one worker."""
        local = MetricRegistry(locked=False)
        with self._lock:
            local._kinds = dict(self._kinds)
        local._series = {name: {} for name in local._kinds}
        return local

    def merge(self, other: "MetricRegistry") -> None:
        """Fold another registry's series into this one."""
        for name, kind in list(other._kinds.items()):
            if self._kinds.get(name) != kind:
                self.declare(name, kind)
        with self._lock:
            self.dropped_samples += other.dropped_samples
            for name, series in other._series.items():
                if self._frozen:
                    self.late_samples += sum(s.count for s in series.values())
                    continue
                target = self._series[name]
                for key, sink in series.items():
                    existing = target.get(key)
                    if existing is None:
                        target[key] = sink.copy()
                    else:
                        existing.merge(sink)

    def reset(self) -> None:
        with self._lock:
            for series in self._series.values():
                series.clear()
            self.dropped_samples = 0

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def snapshot(self, duration: float = 0.0) -> "MetricsSnapshot":
        with self._lock:
            series = {
                name: {key: sink.copy() for key, sink in by_key.items()}
                for name, by_key in self._series.items()
            }
            kinds = dict(self._kinds)
            dropped = self.dropped_samples
        return MetricsSnapshot(kinds, series, duration=duration, dropped_samples=dropped)


class MetricsSnapshot:
    """Read-only copy of a registry at one point in time."""

    def __init__(
        self,
        kinds: Dict[str, MetricKind],
        series: Dict[str, Dict[SeriesKey, object]],
        duration: float = 0.0,
        dropped_samples: int = 0,
    ):
        self._kinds = kinds
        self._series = series
        self.duration = duration
        self.dropped_samples = dropped_samples

    def kind(self, name: str) -> Optional[MetricKind]:
        return self._kinds.get(name)

    def metric_names(self) -> List[str]:
        return sorted(self._kinds)

    def has_samples(self, name: str) -> bool:
        return any(s.count for s in self._series.get(name, {}).values())

    def tag_values(self, name: str, tag: str) -> List[str]:
        values = set()
        for key in self._series.get(name, {}):
            for k, v in key:
                if k == tag:
                    values.add(v)
        return sorted(values)

    def _merged(self, name: str, scope: Optional[Dict[str, str]]):
        kind = self._kinds.get(name)
        if kind is None:
            raise UnknownMetricError(f"metric {name!r} is not declared")
        wanted = set(_series_key(scope))
        merged = None
        for key, sink in self._series.get(name, {}).items():
            if not sink.count or not wanted.issubset(key):
                continue
            if merged is None:
                merged = sink.copy()
            else:
                merged.merge(sink)
        return merged

    def query(
        self,
        name: str,
        statistic: str,
        scope: Optional[Dict[str, str]] = None,
        percentile: Optional[float] = None,
    ) -> Optional[float]:
        """Statistic over samples whose tags include ``scope``; None if none match."""
        merged = self._merged(name, scope)
        if merged is None:
            return None
        return merged.stat(statistic, percentile, self.duration)

    def summary(self, name: str, scope: Optional[Dict[str, str]] = None) -> SummaryStats:
        merged = self._merged(name, scope)
        if merged is None:
            return SummaryStats()
        return merged.summary(self.duration)

    def summaries(self, names: Optional[Iterable[str]] = None) -> Dict[str, SummaryStats]:
        selected = self.metric_names() if names is None else list(names)
        return {
            name: self.summary(name)
            for name in selected
            if name in self._kinds and self.has_samples(name)
        }
