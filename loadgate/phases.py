"""Map elapsed time and concurrency to a symbolic phase tag."""

from typing import List, Sequence

from loadgate.models import ConfigurationError, PhaseRule
from loadgate.scheduler import StageScheduler

DEFAULT_PHASE = "unclassified"


class PhaseClassifier:
    """Ordered rule list; the first matching rule names the phase."""

    def __init__(self, rules: Sequence[PhaseRule] = (), default: str = DEFAULT_PHASE):
        errors = validate_rules(rules)
        if errors:
            raise ConfigurationError(
                "invalid phase rules:\n  - " + "\n  - ".join(errors)
            )
        self.rules = tuple(rules)
        self.default = default

    def classify(self, elapsed: float, concurrency: int) -> str:
        for rule in self.rules:
            if _matches(rule, elapsed, concurrency):
                return rule.tag
        return self.default

    @classmethod
    def from_stages(cls, scheduler: StageScheduler, default: str = DEFAULT_PHASE) -> "PhaseClassifier":
        """Build time-window rules from the scheduler's named stages."""
        rules = [
            PhaseRule(tag=name, start=start, end=end)
            for start, end, name in scheduler.boundaries()
            if end > start
        ]
        return cls(rules, default=default)


def validate_rules(rules: Sequence[PhaseRule]) -> List[str]:
    errors = []
    for i, rule in enumerate(rules):
        if not rule.tag:
            errors.append(f"phases[{i}].tag is required")
        has_concurrency = rule.min_concurrency is not None or rule.max_concurrency is not None
        has_time = rule.start is not None or rule.end is not None
        if not has_concurrency and not has_time:
            errors.append(f"phases[{i}] needs a concurrency range or a time range")
        if (
            rule.min_concurrency is not None
            and rule.max_concurrency is not None
            and rule.min_concurrency > rule.max_concurrency
        ):
            errors.append(f"phases[{i}] concurrency range is inverted")
        if rule.start is not None and rule.end is not None and rule.start > rule.end:
            errors.append(f"phases[{i}] time range is inverted")
    return errors


def _matches(rule: PhaseRule, elapsed: float, concurrency: int) -> bool:
    # concurrency bounds are inclusive, time windows are half-open
    if rule.min_concurrency is not None and concurrency < rule.min_concurrency:
        return False
    if rule.max_concurrency is not None and concurrency > rule.max_concurrency:
        return False
    if rule.start is not None and elapsed < rule.start:
        return False
    if rule.end is not None and elapsed >= rule.end:
        return False
    return True
