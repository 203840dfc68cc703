# loader.py
from __future__ import annotations

import re
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import PipelineError
from .model import (
    CommandRef,
    EnvironmentSpec,
    EnvKind,
    Job,
    Parameter,
    ShellKind,
    ShellStep,
    Step,
    Workflow,
)
from .pipeline import Pipeline
from .ui.console import get_console

# ----------------------------------------------------------------------
# Pipeline file loading (YAML or Python)
# ----------------------------------------------------------------------

DEFAULT_PIPELINE_FILES = (
    "relayci.yml",
    "relayci.yaml",
    ".circleci/config.yml",
    "relayci_pipeline.py",
)

DEFAULT_MACHINE_IMAGE = "ubuntu-2204:current"

# orb executors we know how to stand in for
WINDOWS_ORBS = ("circleci/windows",)

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a YAML file (commands / executors / jobs / workflows)
    or from a Python file defining PIPELINE or build_pipeline() -> Pipeline.
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise PipelineError(f"Pipeline file not found: {p}")
    if p.suffix == ".py":
        return _load_python(p)
    if p.suffix not in (".yml", ".yaml"):
        raise PipelineError(f"Pipeline must be a .yml, .yaml or .py file, got: {p.name}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise PipelineError(f"Invalid YAML syntax in {p.name}: {e}")
    if not data:
        raise PipelineError(f"Pipeline file is empty: {p}")
    name = p.parent.name.lstrip(".") if p.stem == "config" else p.stem
    return parse_pipeline(data, name=name or p.stem)


def _load_python(path: Path) -> Pipeline:
    module_name = f"relayci_pipeline_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
        pipeline = globals_dict.get("PIPELINE")
        if pipeline is None and callable(globals_dict.get("build_pipeline")):
            pipeline = globals_dict["build_pipeline"]()
    except PipelineError:
        raise
    except Exception as e:
        # user code: a bad DSL call, a syntax error or a failed import
        raise PipelineError(f"{path.name}: {type(e).__name__}: {e}") from e

    if not isinstance(pipeline, Pipeline):
        raise PipelineError(
            "Python pipeline must define PIPELINE = pipeline(...) "
            "or build_pipeline() -> Pipeline."
        )
    return pipeline


def discover_pipeline(directory: str | Path = ".") -> Path:
    root = Path(directory)
    found = [root / name for name in DEFAULT_PIPELINE_FILES if (root / name).exists()]
    if not found:
        raise PipelineError(
            "No pipeline file found. Looked for: " + ", ".join(DEFAULT_PIPELINE_FILES)
        )
    return found[0]


# ----------------------------------------------------------------------
# YAML -> model
# ----------------------------------------------------------------------

def parse_pipeline(data: Mapping[str, Any], name: str = "pipeline") -> Pipeline:
    if not isinstance(data, Mapping):
        raise PipelineError("Pipeline root must be a mapping")

    pipeline = Pipeline(name=name)
    orbs = _mapping(data.get("orbs"), "orbs")

    for cmd_name, body in _mapping(data.get("commands"), "commands").items():
        body = _mapping(body, f"commands.{cmd_name}")
        pipeline.registry.register(
            cmd_name,
            description=str(body.get("description", "")).strip(),
            steps=_parse_steps(body.get("steps"), f"commands.{cmd_name}"),
            parameters=_parse_parameters(body.get("parameters"), f"commands.{cmd_name}"),
        )

    executors = {
        ex_name: _mapping(body, f"executors.{ex_name}")
        for ex_name, body in _mapping(data.get("executors"), "executors").items()
    }

    for job_name, body in _mapping(data.get("jobs"), "jobs").items():
        pipeline.add_job(_parse_job(job_name, _mapping(body, f"jobs.{job_name}"), executors, orbs))

    for wf_name, body in _mapping(data.get("workflows"), "workflows").items():
        if not isinstance(body, Mapping):
            # CircleCI 2.0 allows `workflows: {version: 2, ...}`
            continue
        pipeline.add_workflow(_parse_workflow(wf_name, body))

    return pipeline


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PipelineError(f"{where}: expected a mapping, got {type(value).__name__}")
    return dict(value)


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_duration(value: Any, where: str = "timeout") -> Optional[float]:
    """30 -> 30.0, "10m" -> 600.0, "1.5h" -> 5400.0."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    m = _DURATION.match(str(value))
    if not m:
        raise PipelineError(f"{where}: invalid duration {value!r}")
    amount, unit = float(m.group(1)), m.group(2) or "s"
    return amount * {"s": 1, "m": 60, "h": 3600}[unit]


def _parse_parameters(raw: Any, where: str) -> Dict[str, Parameter]:
    params: Dict[str, Parameter] = {}
    for p_name, spec in _mapping(raw, f"{where}.parameters").items():
        spec = _mapping(spec, f"{where}.parameters.{p_name}")
        default = spec.get("default")
        params[p_name] = Parameter(
            name=p_name,
            default=None if default is None else _text(default),
            description=str(spec.get("description", "")),
            type=str(spec.get("type", "string")),
        )
    return params


def _parse_steps(raw: Any, where: str) -> List[Step]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise PipelineError(f"{where}.steps: expected a list")
    steps: List[Step] = []
    for i, item in enumerate(raw):
        step = _parse_step(item, f"{where}.steps[{i}]")
        if step is not None:
            steps.append(step)
    return steps


def _parse_step(item: Any, where: str) -> Optional[Step]:
    if isinstance(item, str):
        if item == "checkout":
            return None  # always implicit, runs first
        return CommandRef(command=item)

    if not isinstance(item, Mapping) or len(item) != 1:
        raise PipelineError(f"{where}: a step is a string or a single-key mapping")

    key, value = next(iter(item.items()))
    if key == "checkout":
        return None
    if key == "run":
        if isinstance(value, str):
            return ShellStep(body=value)
        body = _mapping(value, where)
        if "command" not in body:
            raise PipelineError(f"{where}: run step needs a 'command'")
        return ShellStep(
            body=str(body["command"]),
            name=str(body["name"]) if body.get("name") is not None else None,
            env={k: _text(v) for k, v in _mapping(body.get("environment"), where).items()},
            cwd=body.get("working_directory"),
            timeout=parse_duration(body.get("no_output_timeout"), f"{where}.no_output_timeout"),
        )
    args = _mapping(value, f"{where}.{key}")
    return CommandRef(command=str(key), args={k: _text(v) for k, v in args.items()})


def _shell_kind(value: Any) -> ShellKind:
    text = str(value).lower()
    if text == "windows" or any(s in text for s in ("powershell", "pwsh", "cmd.exe")):
        return ShellKind.WINDOWS
    return ShellKind.POSIX


def _parse_environment(
    body: Mapping[str, Any],
    executors: Mapping[str, Mapping[str, Any]],
    orbs: Mapping[str, Any],
    where: str,
    seen: Tuple[str, ...] = (),
) -> Tuple[EnvironmentSpec, Dict[str, str], Optional[str]]:
    """Returns (spec, executor env vars, executor working_directory)."""
    env_vars: Dict[str, str] = {}
    workdir: Optional[str] = None

    if "docker" in body:
        images = body["docker"]
        if (
            not isinstance(images, list)
            or not images
            or not isinstance(images[0], Mapping)
            or "image" not in images[0]
        ):
            raise PipelineError(f"{where}.docker: expected a list of {{image: ...}}")
        spec = EnvironmentSpec(kind=EnvKind.CONTAINER, image_or_os=str(images[0]["image"]))
    elif "machine" in body:
        machine = body["machine"]
        image = machine.get("image", DEFAULT_MACHINE_IMAGE) if isinstance(machine, Mapping) else DEFAULT_MACHINE_IMAGE
        spec = EnvironmentSpec(kind=EnvKind.VM, image_or_os=str(image))
    elif "macos" in body:
        xcode = _mapping(body["macos"], f"{where}.macos").get("xcode")
        if not xcode:
            raise PipelineError(f"{where}.macos: 'xcode' is required")
        spec = EnvironmentSpec(kind=EnvKind.VM, image_or_os=f"macos:xcode-{xcode}")
    elif "executor" in body:
        ref = body["executor"]
        ref_map = {"name": ref} if isinstance(ref, str) else _mapping(ref, f"{where}.executor")
        ex_name = str(ref_map.get("name", ""))
        spec, env_vars, workdir = _executor(ex_name, executors, orbs, where, seen)
        if "size" in ref_map:
            spec = _replace_spec(spec, resource_tier=str(ref_map["size"]))
        if "shell" in ref_map:
            spec = _replace_spec(spec, shell=_shell_kind(ref_map["shell"]))
    else:
        spec = EnvironmentSpec()

    if "resource_class" in body:
        spec = _replace_spec(spec, resource_tier=str(body["resource_class"]))
    if "shell" in body:
        spec = _replace_spec(spec, shell=_shell_kind(body["shell"]))
    return spec, env_vars, workdir


def _replace_spec(spec: EnvironmentSpec, **changes: Any) -> EnvironmentSpec:
    return replace(spec, **changes)


def _executor(
    name: str,
    executors: Mapping[str, Mapping[str, Any]],
    orbs: Mapping[str, Any],
    where: str,
    seen: Tuple[str, ...],
) -> Tuple[EnvironmentSpec, Dict[str, str], Optional[str]]:
    if name in executors:
        if name in seen:
            raise PipelineError(f"{where}: executor '{name}' refers to itself")
        body = executors[name]
        spec, env_vars, workdir = _parse_environment(body, executors, orbs, f"executors.{name}", seen + (name,))
        env_vars = {**env_vars, **{k: _text(v) for k, v in _mapping(body.get("environment"), name).items()}}
        return spec, env_vars, body.get("working_directory", workdir)

    orb, _, _ = name.partition("/")
    if orb in orbs and str(orbs[orb]).startswith(WINDOWS_ORBS):
        return EnvironmentSpec(kind=EnvKind.CUSTOM, image_or_os=name, shell=ShellKind.WINDOWS), {}, None

    raise PipelineError(f"{where}: unknown executor '{name}'. Known executors: {sorted(executors)}")


def _parse_job(
    name: str,
    body: Mapping[str, Any],
    executors: Mapping[str, Mapping[str, Any]],
    orbs: Mapping[str, Any],
) -> Job:
    where = f"jobs.{name}"
    spec, env_vars, workdir = _parse_environment(body, executors, orbs, where)
    env_vars.update({k: _text(v) for k, v in _mapping(body.get("environment"), where).items()})
    steps = _parse_steps(body.get("steps"), where)
    if not steps:
        get_console().print_debug(f"{where}: job has no steps besides checkout")
    return Job(
        name=name,
        steps=tuple(steps),
        environment=spec,
        env=env_vars,
        working_directory=body.get("working_directory", workdir),
        timeout=parse_duration(body.get("timeout"), f"{where}.timeout"),
        description=str(body.get("description", "")).strip(),
    )


def _parse_workflow(name: str, body: Mapping[str, Any]) -> Workflow:
    raw_jobs = body.get("jobs") or []
    if not isinstance(raw_jobs, list):
        raise PipelineError(f"workflows.{name}.jobs: expected a list")

    jobs: List[str] = []
    requires: Dict[str, Tuple[str, ...]] = {}
    for item in raw_jobs:
        if isinstance(item, str):
            jobs.append(item)
            continue
        if not isinstance(item, Mapping) or len(item) != 1:
            raise PipelineError(f"workflows.{name}.jobs: entries are names or {{name: {{requires: [...]}}}}")
        job_name, opts = next(iter(item.items()))
        jobs.append(str(job_name))
        needs = _mapping(opts, f"workflows.{name}.{job_name}").get("requires") or []
        if needs:
            requires[str(job_name)] = tuple(str(n) for n in needs)
    return Workflow(name=name, jobs=tuple(jobs), requires=requires)
