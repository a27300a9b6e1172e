"""Tests for run configuration loading and validation."""

import json
import os
import tempfile

import pytest

from loadgate.loader import build_config, config_summary, load_config
from loadgate.models import ConfigurationError, MetricKind, Stage


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")


def _write(data, suffix=".json"):
    f = tempfile.NamedTemporaryFile(suffix=suffix, mode="w", delete=False)
    with f:
        if suffix == ".json":
            json.dump(data, f)
        else:
            f.write(data)
    return f.name


class TestLoadConfigYAML:
    def test_load_valid_yaml(self):
        config = load_config(os.path.join(FIXTURES_DIR, "quotes-smoke.yaml"))
        assert config.name == "quotes-smoke"
        assert config.profile == (
            Stage(30.0, 10, "ramp-up"),
            Stage(60.0, 10, "steady"),
            Stage(10.0, 0, "ramp-down"),
        )
        assert config.custom_metrics == (("quote_length", MetricKind.TREND),)
        assert len(config.thresholds) == 5
        abort = [s for s in config.thresholds if s.abort_on_fail]
        assert len(abort) == 1
        assert abort[0].delay_abort_eval == 10.0
        assert config.grace_period == 30.0
        assert config.think_time.jitter == 0.2
        assert config.seed == 7

    def test_load_valid_json(self):
        config = load_config(os.path.join(FIXTURES_DIR, "quotes-spike.json"))
        assert config.name == "quotes-spike"
        assert [r.tag for r in config.phase_rules] == ["spike", "baseline"]
        assert config.behavior_selection == "weighted"
        assert dict(config.behavior_mix) == {"api": 1.0, "casual": 3.0}
        assert config.baseline_probe_iterations == 3

    def test_defaults(self):
        config = build_config({"stages": [{"duration": "10s", "target": 1}]})
        assert config.name == "load-test"
        assert config.weight_map["latency"] == 0.4
        assert config.endpoint_map["health"] == "/health"
        assert config.hold is False
        assert config.max_duration is None


class TestConfigValidation:
    def test_missing_file(self):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config("/nonexistent/path.yaml")

    def test_unsupported_extension(self):
        with tempfile.NamedTemporaryFile(suffix=".txt", delete=False) as f:
            f.write(b"some text")
            f.flush()
            try:
                with pytest.raises(ConfigurationError, match="unsupported"):
                    load_config(f.name)
            finally:
                os.unlink(f.name)

    def test_invalid_yaml(self):
        path = _write("stages: [\n  - broken", suffix=".yaml")
        try:
            with pytest.raises(ConfigurationError, match="failed to parse"):
                load_config(path)
        finally:
            os.unlink(path)

    def test_top_level_must_be_mapping(self):
        path = _write([1, 2, 3])
        try:
            with pytest.raises(ConfigurationError, match="mapping"):
                load_config(path)
        finally:
            os.unlink(path)

    def test_missing_stages(self):
        with pytest.raises(ConfigurationError, match="stages"):
            build_config({"name": "x"})

    def test_reports_every_problem(self):
        with pytest.raises(ConfigurationError) as excinfo:
            load_config(os.path.join(FIXTURES_DIR, "invalid-config.yaml"))
        message = str(excinfo.value)
        for fragment in (
            "'name'",
            "stages[0].duration",
            "stages[1].target",
            "p(95)<<500",
            "http_req_failed{phase}",
            "speed",
            "control_loop_tick",
            "base_url",
            "hold",
        ):
            assert fragment in message

    def test_bad_behaviour_mix(self):
        with pytest.raises(ConfigurationError, match="unknown behaviour"):
            build_config({
                "stages": [{"duration": 1, "target": 1}],
                "behaviors": {"mix": {"doomscroll": 1}},
            })

    def test_bad_think_time(self):
        with pytest.raises(ConfigurationError, match="think_time"):
            build_config({
                "stages": [{"duration": 1, "target": 1}],
                "think_time": {"min": "5s", "max": "1s"},
            })

    def test_all_zero_weights(self):
        with pytest.raises(ConfigurationError, match="positive weight"):
            build_config({
                "stages": [{"duration": 1, "target": 1}],
                "weights": {"latency": 0, "error_rate": 0},
            })

    def test_bad_custom_metric_kind(self):
        with pytest.raises(ConfigurationError, match="kind must be one of"):
            build_config({"stages": [], "metrics": {"x": "histogram"}})

    def test_hold_with_max_duration(self):
        config = build_config({
            "stages": [{"duration": "10s", "target": 5}],
            "hold": True,
            "max_duration": "1m",
        })
        assert config.hold is True
        assert config.max_duration == 60.0


class TestConfigSummary:
    def test_summary(self):
        config = load_config(os.path.join(FIXTURES_DIR, "quotes-smoke.yaml"))
        summary = config_summary(config)
        assert summary["stages"] == 3
        assert summary["total_duration_seconds"] == 100.0
        assert summary["max_concurrency"] == 10
        assert summary["abort_on_fail"] == ["http_req_failed: rate<0.05"]
