"""Load and validate run configuration files (YAML or JSON)."""

import json
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from loadgate.behaviors import SELECTION_MODES, BehaviorKind
from loadgate.models import (
    ConfigurationError,
    MetricKind,
    PhaseRule,
    RunConfig,
    Stage,
    ThinkTime,
)
from loadgate.phases import validate_rules
from loadgate.scheduler import parse_duration
from loadgate.thresholds import CATEGORIES, ThresholdParseError, parse_thresholds

_DEFAULTS = RunConfig()


def load_config(path: str) -> RunConfig:
    """Load a run configuration from a YAML or JSON file.

    Args:
        path: Path to the configuration file.

    Returns:
        A validated, immutable RunConfig.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or invalid.
    """
    if not os.path.isfile(path):
        raise ConfigurationError(f"config file not found: {path}")

    ext = os.path.splitext(path)[1].lower()
    try:
        with open(path, "r") as f:
            if ext in (".yaml", ".yml"):
                raw = yaml.safe_load(f)
            elif ext == ".json":
                raw = json.load(f)
            else:
                raise ConfigurationError(
                    f"unsupported file extension: {ext} (expected .yaml, .yml, or .json)"
                )
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"failed to parse {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError("config must be a mapping/object at the top level")

    return build_config(raw)


def build_config(raw: Dict[str, Any]) -> RunConfig:
    """Construct and validate a RunConfig from a raw dict, reporting every problem at once."""
    errors: List[str] = []

    name = raw.get("name", _DEFAULTS.name)
    if not isinstance(name, str) or not name:
        errors.append("'name' must be a non-empty string")
        name = _DEFAULTS.name

    stages = _parse_stages(raw.get("stages"), errors)
    custom_metrics = _parse_custom_metrics(raw.get("metrics", {}), errors)

    thresholds = ()
    try:
        thresholds = tuple(parse_thresholds(raw.get("thresholds", {}) or {}))
    except ThresholdParseError as exc:
        errors.append(str(exc))

    phase_rules = _parse_phases(raw.get("phases", []), errors)
    weights = _parse_weights(raw.get("weights"), errors)

    grace_period = _duration(raw, "grace_period", _DEFAULTS.grace_period, errors)
    tick = _duration(raw, "control_loop_tick", _DEFAULTS.control_loop_tick, errors)
    if tick <= 0:
        errors.append("'control_loop_tick' must be > 0")
        tick = _DEFAULTS.control_loop_tick
    request_timeout = _duration(raw, "request_timeout", _DEFAULTS.request_timeout, errors)

    max_duration = None
    if raw.get("max_duration") is not None:
        max_duration = _duration(raw, "max_duration", 0.0, errors)

    hold = raw.get("hold", False)
    if not isinstance(hold, bool):
        errors.append("'hold' must be true or false")
        hold = False
    if hold and max_duration is None:
        errors.append("'hold' requires 'max_duration' so the run can end")

    base_url = raw.get("base_url", _DEFAULTS.base_url)
    if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
        errors.append("'base_url' must be an http(s) URL")
        base_url = _DEFAULTS.base_url

    endpoints = _parse_endpoints(raw.get("endpoints"), errors)
    behavior_mix, selection = _parse_behaviors(raw.get("behaviors"), errors)
    think_time = _parse_think_time(raw.get("think_time"), errors)

    seed = raw.get("seed", _DEFAULTS.seed)
    if not isinstance(seed, int) or isinstance(seed, bool):
        errors.append("'seed' must be an integer")
        seed = _DEFAULTS.seed

    probe = raw.get("baseline_probe", {}) or {}
    probe_iterations = 0
    if not isinstance(probe, dict):
        errors.append("'baseline_probe' must be a mapping")
    else:
        probe_iterations = probe.get("iterations", 0)
        if not isinstance(probe_iterations, int) or probe_iterations < 0:
            errors.append("'baseline_probe.iterations' must be a non-negative integer")
            probe_iterations = 0

    if errors:
        raise ConfigurationError(
            "configuration validation failed:\n  - " + "\n  - ".join(errors)
        )

    return RunConfig(
        name=name,
        profile=stages,
        custom_metrics=custom_metrics,
        thresholds=thresholds,
        phase_rules=phase_rules,
        weights=weights,
        grace_period=grace_period,
        control_loop_tick=tick,
        hold=hold,
        base_url=base_url,
        endpoints=endpoints,
        behavior_mix=behavior_mix,
        behavior_selection=selection,
        think_time=think_time,
        request_timeout=request_timeout,
        seed=seed,
        baseline_probe_iterations=probe_iterations,
        max_duration=max_duration,
    )


def _duration(raw: dict, key: str, default: float, errors: List[str]) -> float:
    if raw.get(key) is None:
        return default
    try:
        return parse_duration(raw[key])
    except ConfigurationError as exc:
        errors.append(f"'{key}': {exc}")
        return default


def _parse_stages(raw, errors: List[str]) -> Tuple[Stage, ...]:
    if raw is None:
        errors.append("'stages' is required and must be a list")
        return ()
    if not isinstance(raw, list):
        errors.append("'stages' must be a list")
        return ()
    stages = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            errors.append(f"stages[{i}] must be a mapping")
            continue
        try:
            duration = parse_duration(entry.get("duration", 0))
        except ConfigurationError as exc:
            errors.append(f"stages[{i}].duration: {exc}")
            continue
        target = entry.get("target")
        if not isinstance(target, int) or isinstance(target, bool) or target < 0:
            errors.append(f"stages[{i}].target is required and must be a non-negative integer")
            continue
        name = entry.get("name")
        if name is not None and not isinstance(name, str):
            errors.append(f"stages[{i}].name must be a string")
            name = None
        stages.append(Stage(duration=duration, target=target, name=name))
    return tuple(stages)


def _parse_custom_metrics(raw, errors: List[str]) -> Tuple[Tuple[str, MetricKind], ...]:
    if not isinstance(raw, dict):
        errors.append("'metrics' must be a mapping of metric name to kind")
        return ()
    declared = []
    for name, kind in raw.items():
        try:
            declared.append((str(name), MetricKind(kind)))
        except ValueError:
            errors.append(
                f"metrics[{name!r}] kind must be one of "
                + ", ".join(k.value for k in MetricKind)
            )
    return tuple(declared)


def _parse_phases(raw, errors: List[str]) -> Tuple[PhaseRule, ...]:
    if not isinstance(raw, list):
        errors.append("'phases' must be a list")
        return ()
    rules = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            errors.append(f"phases[{i}] must be a mapping")
            continue
        try:
            start = parse_duration(entry["start"]) if entry.get("start") is not None else None
            end = parse_duration(entry["end"]) if entry.get("end") is not None else None
        except ConfigurationError as exc:
            errors.append(f"phases[{i}]: {exc}")
            continue
        low = entry.get("min_concurrency")
        high = entry.get("max_concurrency")
        if any(v is not None and (not isinstance(v, int) or v < 0) for v in (low, high)):
            errors.append(f"phases[{i}] concurrency bounds must be non-negative integers")
            continue
        rules.append(
            PhaseRule(
                tag=str(entry.get("tag", "")),
                min_concurrency=low,
                max_concurrency=high,
                start=start,
                end=end,
            )
        )
    errors.extend(validate_rules(rules))
    return tuple(rules)


def _parse_weights(raw, errors: List[str]) -> Tuple[Tuple[str, float], ...]:
    if raw is None:
        return _DEFAULTS.weights
    if not isinstance(raw, dict):
        errors.append("'weights' must be a mapping")
        return _DEFAULTS.weights
    weights = []
    for category, weight in raw.items():
        if category not in CATEGORIES:
            errors.append(
                f"weights[{category!r}]: unknown category (expected one of {', '.join(CATEGORIES)})"
            )
            continue
        if not isinstance(weight, (int, float)) or isinstance(weight, bool) or weight < 0:
            errors.append(f"weights[{category!r}] must be a non-negative number")
            continue
        weights.append((category, float(weight)))
    if weights and not any(w for _, w in weights):
        errors.append("'weights' must give at least one category a positive weight")
    return tuple(weights)


def _parse_endpoints(raw, errors: List[str]) -> Tuple[Tuple[str, str], ...]:
    if raw is None:
        return _DEFAULTS.endpoints
    if not isinstance(raw, dict) or not raw:
        errors.append("'endpoints' must be a non-empty mapping of name to path")
        return _DEFAULTS.endpoints
    endpoints = []
    for name, path in raw.items():
        if not isinstance(path, str) or not path:
            errors.append(f"endpoints[{name!r}] must be a non-empty path")
            continue
        endpoints.append((str(name), path))
    return tuple(endpoints)


def _parse_behaviors(raw, errors: List[str]) -> Tuple[Tuple[Tuple[str, float], ...], str]:
    if raw is None:
        return _DEFAULTS.behavior_mix, _DEFAULTS.behavior_selection
    if not isinstance(raw, dict):
        errors.append("'behaviors' must be a mapping")
        return _DEFAULTS.behavior_mix, _DEFAULTS.behavior_selection

    selection = raw.get("selection", _DEFAULTS.behavior_selection)
    if selection not in SELECTION_MODES:
        errors.append(f"'behaviors.selection' must be one of {', '.join(SELECTION_MODES)}")
        selection = _DEFAULTS.behavior_selection

    mix_raw = raw.get("mix")
    if mix_raw is None:
        return _DEFAULTS.behavior_mix, selection
    if not isinstance(mix_raw, dict) or not mix_raw:
        errors.append("'behaviors.mix' must be a non-empty mapping of behaviour to weight")
        return _DEFAULTS.behavior_mix, selection

    valid = {k.value for k in BehaviorKind}
    mix = []
    for name, weight in mix_raw.items():
        if name not in valid:
            errors.append(f"behaviors.mix[{name!r}]: unknown behaviour (expected one of {', '.join(sorted(valid))})")
            continue
        if not isinstance(weight, (int, float)) or isinstance(weight, bool) or weight < 0:
            errors.append(f"behaviors.mix[{name!r}] must be a non-negative number")
            continue
        mix.append((name, float(weight)))
    return tuple(mix), selection


def _parse_think_time(raw, errors: List[str]) -> ThinkTime:
    if raw is None:
        return _DEFAULTS.think_time
    if not isinstance(raw, dict):
        errors.append("'think_time' must be a mapping")
        return _DEFAULTS.think_time
    try:
        low = parse_duration(raw.get("min", _DEFAULTS.think_time.min_seconds))
        high = parse_duration(raw.get("max", _DEFAULTS.think_time.max_seconds))
    except ConfigurationError as exc:
        errors.append(f"think_time: {exc}")
        return _DEFAULTS.think_time
    jitter = raw.get("jitter", 0.0)
    if not isinstance(jitter, (int, float)) or not 0 <= jitter <= 1:
        errors.append("'think_time.jitter' must be a number between 0 and 1")
        jitter = 0.0
    if low > high:
        errors.append("'think_time.min' must not exceed 'think_time.max'")
        return _DEFAULTS.think_time
    return ThinkTime(min_seconds=low, max_seconds=high, jitter=float(jitter))


def config_summary(config: RunConfig) -> Dict[str, Any]:
    """Short description of a resolved configuration, for the CLI."""
    total = sum(s.duration for s in config.profile)
    return {
        "name": config.name,
        "stages": len(config.profile),
        "total_duration_seconds": total,
        "max_concurrency": max((s.target for s in config.profile), default=0),
        "thresholds": [spec.describe() for spec in config.thresholds],
        "abort_on_fail": [spec.describe() for spec in config.thresholds if spec.abort_on_fail],
        "base_url": config.base_url,
        "max_duration": config.max_duration,
    }
