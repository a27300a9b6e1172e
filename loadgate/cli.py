"""CLI entry point for loadgate."""

import asyncio
import dataclasses
import json
import logging
import sys

import click

from loadgate.baseline import (
    DEFAULT_BASELINE_METRICS,
    compare,
    load_baseline,
    save_baseline,
)
from loadgate.evidence import append_event, create_event
from loadgate.executor import HttpxExecutor
from loadgate.gate import FAILING_GRADE, GRADE_BOUNDARIES
from loadgate.loader import config_summary, load_config
from loadgate.metrics import MetricRegistry
from loadgate.models import BaselineSnapshot, ConfigurationError
from loadgate.report import (
    EXIT_ERROR,
    comparison_to_dict,
    exit_code,
    render_summary,
    result_exit_code,
    result_to_dict,
)
from loadgate.runner import TestRun
from loadgate.thresholds import validate_against

GRADES = [grade for grade, _ in GRADE_BOUNDARIES] + [FAILING_GRADE]


@click.group()
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging verbosity (logs go to stderr).",
)
def main(log_level):
    """loadgate -- drive load from a stage profile and gate the result on thresholds."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@main.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run configuration file (YAML or JSON).",
)
@click.option(
    "--out",
    default=None,
    type=click.Path(),
    help="Optional output path for the result artifact (JSON). Prints to stdout if omitted.",
)
@click.option(
    "--log",
    "log_path",
    default=None,
    type=click.Path(),
    help="Optional path to the run ledger (JSONL). Appends an entry when provided.",
)
@click.option(
    "--baseline",
    "baseline_path",
    default=None,
    type=click.Path(exists=True),
    help="Optional baseline snapshot or previous result to compare against.",
)
@click.option(
    "--save-baseline",
    "baseline_out",
    default=None,
    type=click.Path(),
    help="Optional path to write this run's metrics as a baseline snapshot.",
)
@click.option(
    "--base-url",
    default=None,
    envvar="LOADGATE_BASE_URL",
    help="Override the target base URL.",
)
@click.option("--hold/--no-hold", default=None, help="Hold the last stage's target until max duration.")
@click.option(
    "--min-grade",
    default=None,
    type=click.Choice(GRADES),
    help="Exit with 3 (unstable) when the gate passes below this grade.",
)
def run(config_path, out, log_path, baseline_path, baseline_out, base_url, hold, min_grade):
    """Run a load test and evaluate its quality gate."""
    try:
        config = load_config(config_path)
        overrides = {}
        if base_url:
            overrides["base_url"] = base_url
        if hold is not None:
            overrides["hold"] = hold
        if overrides:
            config = dataclasses.replace(config, **overrides)
        baseline = load_baseline(baseline_path) if baseline_path else None
        result = asyncio.run(_run(config, baseline))
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_ERROR)

    data = result_to_dict(result)
    artifact = json.dumps(data, indent=2)
    if out:
        with open(out, "w") as f:
            f.write(artifact + "\n")
        click.echo(f"Result written to {out}", err=True)
    else:
        click.echo(artifact)
    click.echo(render_summary(data), err=True)

    if baseline_out:
        metrics = {
            name: stats
            for name, stats in result.metrics.items()
            if name in DEFAULT_BASELINE_METRICS
        }
        save_baseline(BaselineSnapshot(captured_at=result.started_at, metrics=metrics), baseline_out)
        click.echo(f"Baseline written to {baseline_out}", err=True)

    if log_path:
        event = create_event(
            config_path=config_path,
            stages=[s.name or f"stage-{i + 1}" for i, s in enumerate(config.profile)],
            result=result,
        )
        append_event(event, log_path)
        click.echo(f"Run logged to {log_path}", err=True)

    sys.exit(result_exit_code(result, min_grade))


async def _run(config, baseline):
    async with HttpxExecutor() as executor:
        return await TestRun(config, executor, baseline=baseline).run()


@main.command()
@click.option(
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a run configuration file (YAML or JSON).",
)
def validate(config_path):
    """Validate a run configuration without generating load."""
    try:
        config = load_config(config_path)
        registry = MetricRegistry()
        registry.declare_builtin_metrics()
        for name, kind in config.custom_metrics:
            registry.declare(name, kind)
        validate_against(config.thresholds, registry)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_ERROR)
    click.echo(json.dumps(config_summary(config), indent=2))


@main.command()
@click.option(
    "--result",
    "result_path",
    required=True,
    type=click.Path(exists=True),
    help="Path to a saved result artifact (JSON).",
)
@click.option("--min-grade", default=None, type=click.Choice(GRADES))
def gate(result_path, min_grade):
    """Re-read a saved result artifact and exit with its gate verdict."""
    try:
        with open(result_path, "r") as f:
            data = json.load(f)
        verdict = data["gate"]
        passed, grade = bool(verdict["passed"]), verdict["grade"]
        if grade not in GRADES:
            raise ValueError(f"unknown grade {grade!r}")
        summary = render_summary(data)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        click.echo(f"Error: invalid result artifact: {exc}", err=True)
        sys.exit(EXIT_ERROR)
    click.echo(summary)
    sys.exit(exit_code(passed, grade, min_grade))


@main.command(name="compare")
@click.option("--baseline", "baseline_path", required=True, type=click.Path(exists=True))
@click.option("--current", "current_path", required=True, type=click.Path(exists=True))
@click.option(
    "--statistic",
    default="avg",
    show_default=True,
    type=click.Choice(["avg", "med", "p90", "p95", "p99", "max", "rate"]),
)
def compare_cmd(baseline_path, current_path, statistic):
    """Compare two baseline snapshots or result artifacts."""
    try:
        before = load_baseline(baseline_path)
        after = load_baseline(current_path)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(EXIT_ERROR)
    click.echo(json.dumps(comparison_to_dict(compare(before, after, statistic=statistic)), indent=2))


if __name__ == "__main__":
    main()
