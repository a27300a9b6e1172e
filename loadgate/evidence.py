"""Append-only run ledger in JSONL format."""

import json
import logging
import os
from dataclasses import asdict, fields
from datetime import datetime, timezone
from typing import List

from loadgate.models import RunEvent, RunResult

logger = logging.getLogger(__name__)

_EVENT_FIELDS = {f.name for f in fields(RunEvent)}


def outcome_for(result: RunResult) -> str:
    if result.aborted:
        return "aborted"
    return "gate-passed" if result.gate.passed else "gate-failed"


def create_event(config_path: str, stages: List[str], result: RunResult) -> RunEvent:
    """Build a RunEvent for a finished run with the current UTC timestamp.

    Args:
        config_path: Path to the run configuration file.
        stages: Names of the profile's stages.
        result: The finished run's result artifact.

    Returns:
        A populated RunEvent.
    """
    return RunEvent(
        ts=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        config=config_path,
        stages=stages,
        passed=result.gate.passed,
        score=result.gate.composite_score,
        grade=result.gate.grade,
        aborted=result.aborted,
        outcome=outcome_for(result),
    )


def append_event(event: RunEvent, log_path: str) -> None:
    """Append one run event as a JSONL line, creating parent directories as needed.

    Existing entries are never rewritten.
    """
    parent = os.path.dirname(log_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(log_path, "a") as f:
        f.write(json.dumps(asdict(event)) + "\n")


def read_events(log_path: str) -> List[RunEvent]:
    """Read every event from a run ledger, oldest first.

    Blank lines, lines that are not JSON objects, and objects missing the
    ``ts``/``config`` keys are skipped. Unknown keys are ignored.
    """
    if not os.path.isfile(log_path):
        return []

    events = []
    with open(log_path, "r") as f:
        for lineno, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
                events.append(RunEvent(**{k: v for k, v in raw.items() if k in _EVENT_FIELDS}))
            except (json.JSONDecodeError, AttributeError, TypeError):
                logger.debug("skipping malformed ledger line %d in %s", lineno, log_path)
    return events
