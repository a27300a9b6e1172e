"""Result artifact serialisation, text summary, and CI exit codes."""

import dataclasses
import json
from typing import Any, Dict, List, Optional

from loadgate.gate import GRADE_BOUNDARIES, FAILING_GRADE
from loadgate.models import BaselineComparison, Evaluation, RunResult, ThresholdSpec

# Exit codes so CI can tell "gate failed" from "tool crashed".
EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_ERROR = 2
EXIT_UNSTABLE = 3

_GRADE_ORDER = [grade for grade, _ in GRADE_BOUNDARIES] + [FAILING_GRADE]


def spec_to_dict(spec: ThresholdSpec) -> Dict[str, Any]:
    return {
        "metric": spec.metric,
        "scope": spec.scope_tags,
        "expression": f"{spec.statistic_label}{spec.operator}{spec.bound:g}",
        "abort_on_fail": spec.abort_on_fail,
    }


def evaluation_to_dict(evaluation: Evaluation) -> Dict[str, Any]:
    out = spec_to_dict(evaluation.spec)
    out["ok"] = evaluation.ok
    out["observed"] = evaluation.observed
    return out


def comparison_to_dict(comparison: Optional[BaselineComparison]) -> Optional[Dict[str, Any]]:
    if comparison is None:
        return None
    return {
        "statistic": comparison.statistic,
        "deltas": comparison.deltas,
        "classification": comparison.classification,
    }


def result_to_dict(result: RunResult) -> Dict[str, Any]:
    gate = result.gate
    return {
        "started_at": result.started_at,
        "duration": round(result.duration, 3),
        "aborted": result.aborted,
        "abort_reason": result.abort_reason,
        "stages_completed": result.stages_completed,
        "stages_total": result.stages_total,
        "dropped_samples": result.dropped_samples,
        "worker_errors": result.worker_errors,
        "metrics": {name: dataclasses.asdict(stats) for name, stats in result.metrics.items()},
        "gate": {
            "passed": gate.passed,
            "aborted": gate.aborted,
            "composite_score": gate.composite_score,
            "grade": gate.grade,
            "category_scores": gate.category_scores,
            "violations": [spec_to_dict(s) for s in gate.violations],
            "evaluations": [evaluation_to_dict(e) for e in gate.evaluations],
        },
        "baseline_comparison": comparison_to_dict(result.baseline_comparison),
        "recovery": comparison_to_dict(result.recovery),
    }


def result_to_json(result: RunResult) -> str:
    return json.dumps(result_to_dict(result), indent=2)


def exit_code(passed: bool, grade: str, min_grade: Optional[str] = None) -> int:
    """EXIT_PASS, EXIT_THRESHOLD_BREACH, or EXIT_UNSTABLE when the grade is below ``min_grade``."""
    if not passed:
        return EXIT_THRESHOLD_BREACH
    if min_grade is not None and _GRADE_ORDER.index(grade) > _GRADE_ORDER.index(min_grade):
        return EXIT_UNSTABLE
    return EXIT_PASS


def result_exit_code(result: RunResult, min_grade: Optional[str] = None) -> int:
    return exit_code(result.gate.passed, result.gate.grade, min_grade)


def render_summary(data: Dict[str, Any]) -> str:
    """Human-readable summary of a result artifact dict, for CI logs."""
    gate = data["gate"]
    lines: List[str] = []
    lines.append("Quality Gate")
    lines.append("-" * 72)
    lines.append(f"{'Threshold':<44}{'Observed':>12}{'Status':>16}")
    lines.append("-" * 72)
    for evaluation in gate["evaluations"]:
        label = evaluation["metric"]
        if evaluation["scope"]:
            label += "{" + ",".join(f"{k}:{v}" for k, v in evaluation["scope"].items()) + "}"
        label = f"{label} {evaluation['expression']}"
        observed = evaluation["observed"]
        observed_text = "-" if observed is None else f"{observed:.4g}"
        if observed is None:
            status = "PASS (no data)"
        else:
            status = "PASS" if evaluation["ok"] else "FAIL"
        if evaluation["abort_on_fail"]:
            label += " [abort]"
        lines.append(f"{label[:44]:<44}{observed_text:>12}{status:>16}")
    lines.append("-" * 72)

    duration = data.get("duration", 0.0)
    lines.append(
        f"Duration: {duration:.1f}s  Stages: {data.get('stages_completed', 0)}/{data.get('stages_total', 0)}"
    )
    if data.get("aborted"):
        lines.append(f"ABORTED: {data.get('abort_reason') or 'abort threshold failed'}")
    lines.append(f"Score: {gate['composite_score']:.1f}  Grade: {gate['grade']}")
    lines.append(f"Overall: {'PASS' if gate['passed'] else 'FAIL'}")

    for key, title in (("baseline_comparison", "Baseline"), ("recovery", "Recovery")):
        comparison = data.get(key)
        if not comparison:
            continue
        lines.append(f"{title} ({comparison['statistic']}): {comparison['classification'] or 'n/a'}")
        for name, delta in comparison["deltas"].items():
            text = "n/a" if delta is None else f"{delta:+.1f}%"
            lines.append(f"  - {name}: {text}")

    if data.get("dropped_samples"):
        lines.append(f"Warning: {data['dropped_samples']} non-finite sample(s) dropped")
    if data.get("worker_errors"):
        lines.append(f"Warning: {data['worker_errors']} iteration(s) raised")
    return "\n".join(lines)
