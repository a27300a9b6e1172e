"""Turn an ordered list of stages into a continuous concurrency function."""

import math
import re
from typing import List, Optional, Sequence, Tuple

from loadgate.models import ConfigurationError, Stage


class StageScheduler:
    """Concurrency-over-time for a load profile.

    Within a stage concurrency moves linearly from the previous stage's end
    value (0 before the first stage) to the stage target. Zero-duration stages
    are instantaneous steps. Past the end of the profile concurrency drops to
    0, or stays at the last target when ``hold`` is set.
    """

    def __init__(self, profile: Sequence[Stage], hold: bool = False):
        errors = validate_profile(profile)
        if errors:
            raise ConfigurationError(
                "invalid load profile:\n  - " + "\n  - ".join(errors)
            )
        self.profile: Tuple[Stage, ...] = tuple(profile)
        self.hold = hold

        starts = []
        t = 0.0
        for stage in self.profile:
            starts.append(t)
            t += stage.duration
        self._starts: Tuple[float, ...] = tuple(starts)
        self.total_duration: float = t

    @property
    def max_concurrency(self) -> int:
        return max((s.target for s in self.profile), default=0)

    def concurrency_at(self, elapsed: float) -> int:
        """Target concurrency at ``elapsed`` seconds since the run started."""
        if not self.profile:
            return 0
        if elapsed > self.total_duration:
            return self.profile[-1].target if self.hold else 0
        if elapsed < 0:
            elapsed = 0.0

        previous = 0
        for start, stage in zip(self._starts, self.profile):
            if stage.duration == 0:
                if elapsed >= start:
                    previous = stage.target
                    continue
                break
            if elapsed < start + stage.duration:
                fraction = (elapsed - start) / stage.duration
                return _round_half_up(previous + (stage.target - previous) * fraction)
            previous = stage.target
        return previous

    def stage_index_at(self, elapsed: float) -> Optional[int]:
        """Index of the stage active at ``elapsed``, or None past the profile end."""
        if elapsed > self.total_duration or not self.profile:
            return None
        index = 0
        for i, (start, stage) in enumerate(zip(self._starts, self.profile)):
            if elapsed >= start:
                index = i
                if elapsed < start + stage.duration:
                    break
        return index

    def stages_completed(self, elapsed: float) -> int:
        return sum(
            1
            for start, stage in zip(self._starts, self.profile)
            if start + stage.duration <= elapsed
        )

    def boundaries(self) -> List[Tuple[float, float, str]]:
        """Named ``(start, end, name)`` windows, one per stage."""
        return [
            (start, start + stage.duration, stage.name or f"stage-{i + 1}")
            for i, (start, stage) in enumerate(zip(self._starts, self.profile))
        ]

    def is_finished(self, elapsed: float) -> bool:
        return not self.hold and elapsed > self.total_duration


def validate_profile(profile: Sequence[Stage]) -> List[str]:
    errors = []
    for i, stage in enumerate(profile):
        if not isinstance(stage.duration, (int, float)) or math.isnan(stage.duration):
            errors.append(f"stages[{i}].duration must be a number")
        elif stage.duration < 0:
            errors.append(f"stages[{i}].duration must be >= 0 (got {stage.duration})")
        if not isinstance(stage.target, int) or isinstance(stage.target, bool):
            errors.append(f"stages[{i}].target must be an integer")
        elif stage.target < 0:
            errors.append(f"stages[{i}].target must be >= 0 (got {stage.target})")
    return errors


_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value) -> float:
    """Seconds from a number or a string like ``"90s"``, ``"2m"``, ``"1h30m"``, ``"500ms"``."""
    if isinstance(value, bool):
        raise ConfigurationError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if math.isnan(value) or value < 0:
            raise ConfigurationError(f"duration must be >= 0 (got {value!r})")
        return float(value)
    if not isinstance(value, str):
        raise ConfigurationError(f"invalid duration: {value!r}")

    text = value.strip().lower()
    if not text:
        raise ConfigurationError("duration must not be empty")
    if text.startswith("-"):
        raise ConfigurationError(f"duration must be >= 0 (got {value!r})")
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigurationError(
            f"invalid duration: {value!r} (expected e.g. '30s', '2m', '1h30m', '500ms')"
        )
    return total


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
