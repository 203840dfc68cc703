# report.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from .model import JobResult, WorkflowResult


def job_to_dict(result: JobResult, *, include_output: bool = False) -> Dict[str, Any]:
    """Per-job result document: name, outcome, failing step, exit code, duration."""
    data: Dict[str, Any] = {
        "name": result.name,
        "outcome": result.outcome.value,
        "duration": round(result.duration, 3),
    }
    if result.failing_step is not None:
        data["failing_step"] = result.failing_step
        data["failing_index"] = result.failing_index
    if result.exit_code is not None:
        data["exit_code"] = result.exit_code
    if result.error:
        data["error"] = result.error
    if result.staging_dir is not None:
        data["staging_dir"] = str(result.staging_dir)

    steps = []
    for s in result.steps:
        step: Dict[str, Any] = {"name": s.name, "status": s.status.value, "duration": round(s.duration, 3)}
        if s.exit_code is not None:
            step["exit_code"] = s.exit_code
        if include_output and s.output:
            step["output"] = s.output
        steps.append(step)
    data["steps"] = steps
    return data


def workflow_to_dict(result: WorkflowResult, *, include_output: bool = False) -> Dict[str, Any]:
    return {
        "workflow": result.name,
        "overall": result.overall.value,
        "exit_code": result.exit_code,
        "jobs": [job_to_dict(j, include_output=include_output) for j in result.jobs.values()],
    }


def write_report(result: WorkflowResult, path: str | Path, *, include_output: bool = False) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(
        json.dumps(workflow_to_dict(result, include_output=include_output), indent=2) + "\n",
        encoding="utf-8",
    )
    return p
