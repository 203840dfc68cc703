# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------

class EnvKind(str, Enum):
    CONTAINER = "container"
    VM = "vm"
    CUSTOM = "custom"


class ShellKind(str, Enum):
    POSIX = "posix"
    WINDOWS = "windows"


@dataclass(frozen=True)
class EnvironmentSpec:
    """Where a job runs: container image, OS image or custom executor."""
    kind: EnvKind = EnvKind.CUSTOM
    image_or_os: str = "host"
    resource_tier: str = "medium"
    shell: ShellKind = ShellKind.POSIX

    @property
    def platform(self) -> str:
        if self.shell is ShellKind.WINDOWS:
            return "windows"
        image = self.image_or_os.lower()
        if image.startswith(("macos", "xcode")):
            return "macos"
        return "linux"

    def describe(self) -> str:
        return f"{self.kind.value}:{self.image_or_os} ({self.resource_tier}, {self.shell.value})"

    def context(self) -> Dict[str, str]:
        """Values exposed to steps as << environment.* >> placeholders."""
        return {
            "kind": self.kind.value,
            "image": self.image_or_os,
            "resource_tier": self.resource_tier,
            "shell": self.shell.value,
            "platform": self.platform,
        }


# ---------------------------------------------------------------------
# Steps (tagged variant: ShellStep | CommandRef)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ShellStep:
    """A single shell invocation inside a job."""
    body: str
    name: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def title(self) -> str:
        if self.name:
            return self.name
        first = self.body.strip().splitlines()
        return first[0] if first else "(empty)"


@dataclass(frozen=True)
class CommandRef:
    """Reference to a registered Command plus its argument binding."""
    command: str
    args: Mapping[str, str] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.command


Step = Union[ShellStep, CommandRef]


@dataclass(frozen=True)
class Parameter:
    name: str
    default: Optional[str] = None   # None -> required
    description: str = ""
    type: str = "string"

    @property
    def required(self) -> bool:
        return self.default is None


@dataclass(frozen=True)
class Command:
    """A reusable, parameterizable sequence of steps."""
    name: str
    steps: Tuple[Step, ...]
    description: str = ""
    parameters: Mapping[str, Parameter] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Jobs / workflows
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    """
    A CI job: one environment, an ordered list of steps.

    The checkout step is implicit and always runs first.
    """
    name: str
    steps: Tuple[Step, ...]
    environment: EnvironmentSpec = field(default_factory=EnvironmentSpec)
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    timeout: Optional[float] = None
    description: str = ""


@dataclass(frozen=True)
class ResolvedJob:
    """A Job whose command references have all been expanded."""
    job: Job
    steps: Tuple[ShellStep, ...]

    @property
    def name(self) -> str:
        return self.job.name


@dataclass(frozen=True)
class Workflow:
    """
    Named set of jobs plus optional `requires` edges.

    With no edges every job is independent and runs in a single layer.
    """
    name: str
    jobs: Tuple[str, ...]
    requires: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def needs_of(self, job_name: str) -> List[str]:
        return list(self.requires.get(job_name, ()))


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ENVIRONMENT_ERROR = "environment_error"
    SKIPPED = "skipped"   # a required job did not succeed


class StepStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    """What the executor reports for one shell step."""
    exit_code: int
    output: str
    env_delta: Mapping[str, str] = field(default_factory=dict)
    duration: float = 0.0


@dataclass(frozen=True)
class StepLog:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    output: str = ""
    duration: float = 0.0


@dataclass
class JobResult:
    name: str
    outcome: Outcome
    steps: List[StepLog] = field(default_factory=list)
    failing_step: Optional[str] = None
    failing_index: Optional[int] = None   # 1-based, user steps only
    exit_code: Optional[int] = None
    duration: float = 0.0
    staging_dir: Optional[Path] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def executed(self) -> List[str]:
        return [s.name for s in self.steps if s.status is not StepStatus.SKIPPED]


@dataclass
class WorkflowResult:
    name: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    @property
    def overall(self) -> Outcome:
        if all(r.ok for r in self.jobs.values()):
            return Outcome.SUCCESS
        return Outcome.FAILED

    @property
    def exit_code(self) -> int:
        return 0 if self.overall is Outcome.SUCCESS else 1
