# src/relayci/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .model import (
    Command,
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
from .registry import ParameterDecl, normalize_parameters


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> ShellStep:
    """Create a shell step."""
    return ShellStep(body=cmd, name=name, env=dict(env or {}), cwd=cwd, timeout=timeout)


def use(command: str, **args: Any) -> CommandRef:
    """Reference a registered command: use("build", profile="release")."""
    return CommandRef(command=command, args={k: _as_text(v) for k, v in args.items()})


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def command(
    name: str,
    *steps: Step,
    description: str = "",
    parameters: Optional[ParameterDecl] = None,
) -> Command:
    """
    Define a reusable command. Parameters map name -> default (None = required);
    bodies refer to them as << parameters.name >>.
    """
    if not steps:
        raise ValueError(f"command({name!r}) must have at least one step")
    return Command(
        name=name,
        steps=tuple(steps),
        description=description,
        parameters=normalize_parameters(parameters),
    )


def param(name: str, default: Optional[str] = None, description: str = "") -> Parameter:
    return Parameter(name=name, default=default, description=description)


# ---------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------

def docker(image: str, tier: str = "medium") -> EnvironmentSpec:
    return EnvironmentSpec(kind=EnvKind.CONTAINER, image_or_os=image, resource_tier=tier)


def machine(image: str, tier: str = "medium") -> EnvironmentSpec:
    return EnvironmentSpec(kind=EnvKind.VM, image_or_os=image, resource_tier=tier)


def macos(xcode: str, tier: str = "macos.m1.medium.gen1") -> EnvironmentSpec:
    return EnvironmentSpec(kind=EnvKind.VM, image_or_os=f"macos:xcode-{xcode}", resource_tier=tier)


def windows(executor: str = "win/default", tier: str = "medium") -> EnvironmentSpec:
    return EnvironmentSpec(
        kind=EnvKind.CUSTOM,
        image_or_os=executor,
        resource_tier=tier,
        shell=ShellKind.WINDOWS,
    )


def host(tier: str = "medium") -> EnvironmentSpec:
    return EnvironmentSpec(kind=EnvKind.CUSTOM, image_or_os="host", resource_tier=tier)


def per_platform(environment: EnvironmentSpec, choices: Mapping[str, Step | str]) -> Step:
    """
    Select platform-specific setup once, at job definition time.

        per_platform(env, {"linux": "setup_linux_env", "macos": "setup_macos_env"})
    """
    platform = environment.platform
    if platform not in choices:
        raise ValueError(
            f"No setup defined for platform '{platform}'. Defined: {sorted(choices)}"
        )
    choice = choices[platform]
    return use(choice) if isinstance(choice, str) else choice


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), use(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    environment: Optional[EnvironmentSpec] = None,
    env: Optional[Dict[str, str]] = None,
    working_directory: str | None = None,
    timeout: float | None = None,
    description: str = "",
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    return Job(
        name=name,
        steps=tuple(steps_final),
        environment=environment or host(),
        env=dict(env or {}),
        working_directory=working_directory,
        timeout=timeout,
        description=description,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._environment: EnvironmentSpec = host()
        self._env: dict[str, str] = {}
        self._working_directory: str | None = None
        self._timeout: float | None = None

    def runs_on(self, environment: EnvironmentSpec):
        self._environment = environment
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(sh(name, run, cwd=cwd))
        return self

    def use(self, command_name: str, **args: Any):
        self._steps.append(use(command_name, **args))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def in_directory(self, path: str):
        self._working_directory = path
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            environment=self._environment,
            env=self._env,
            working_directory=self._working_directory,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("os", [docker("cimg/rust:1.65.0"), macos("14.2.0")]).jobs(
            lambda env: job(f"build-{env.platform}", use("build_debug"), environment=env)
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow / pipeline helpers
# ---------------------------------------------------------------------

def workflow(
    name: str,
    *jobs: Job | str,
    requires: Optional[Mapping[str, Sequence[str]]] = None,
) -> Workflow:
    """Independent jobs unless `requires` declares edges."""
    names = tuple(j if isinstance(j, str) else j.name for j in jobs)
    edges: Dict[str, Tuple[str, ...]] = {k: tuple(v) for k, v in (requires or {}).items()}
    return Workflow(name=name, jobs=names, requires=edges)


def pipeline(
    name: str = "pipeline",
    *,
    commands: Sequence[Command] = (),
    jobs: Sequence[Job] = (),
    workflows: Sequence[Workflow] = (),
) -> Pipeline:
    p = Pipeline(name=name)
    for c in commands:
        p.registry.add(c)
    for j in jobs:
        p.add_job(j)
    for w in workflows:
        p.add_workflow(w)
    return p
