# errors.py
from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from typing import List, Optional


class RelayError(Exception):
    """Base class for every error raised by relayci."""


# ----------------------------------------------------------------------
# Definition-time errors (abort the whole run before any process spawns)
# ----------------------------------------------------------------------

class PipelineError(RelayError):
    """The pipeline file is malformed or references something undefined."""


class ResolutionError(PipelineError):
    """Command expansion failed."""


class DuplicateNameError(PipelineError):
    def __init__(self, name: str, kind: str = "command"):
        self.name = name
        self.kind = kind
        super().__init__(f"{kind} '{name}' is already defined")


class UnknownCommandError(ResolutionError):
    def __init__(self, name: str, known: Optional[List[str]] = None):
        self.name = name
        self.known = sorted(known or [])
        msg = f"Unknown command '{name}'"
        if self.known:
            msg += f". Known commands: {self.known}"
        super().__init__(msg)


class MissingParameterError(ResolutionError):
    def __init__(self, command: str, parameter: str):
        self.command = command
        self.parameter = parameter
        super().__init__(
            f"Command '{command}' needs parameter '{parameter}' "
            f"(no default and no argument supplied)"
        )


class UnexpectedParameterError(ResolutionError):
    def __init__(self, command: str, parameters: List[str]):
        self.command = command
        self.parameters = sorted(parameters)
        super().__init__(
            f"Command '{command}' does not declare parameter(s) {self.parameters}"
        )


class CyclicReferenceError(ResolutionError):
    def __init__(self, chain: List[str]):
        self.chain = list(chain)
        super().__init__("Cyclic command reference: " + " -> ".join(self.chain))


class ResolutionDepthError(ResolutionError):
    def __init__(self, chain: List[str], max_depth: int):
        self.chain = list(chain)
        self.max_depth = max_depth
        super().__init__(
            f"Command nesting deeper than {max_depth}: " + " -> ".join(self.chain)
        )


class WorkflowDefinitionError(PipelineError):
    """Unknown job in a workflow, a requires edge to nowhere, or a cycle."""


# ----------------------------------------------------------------------
# Job-scoped errors (recorded in the JobResult, never reach siblings)
# ----------------------------------------------------------------------

class ProvisioningError(RelayError):
    """The requested image / tier / shell is not available."""


class ExecutionEnvironmentError(RelayError, builtins.OSError):
    """Infrastructure failure while running a step (spawn, checkout, ...)."""


class StepTimeoutError(RelayError, builtins.TimeoutError):
    def __init__(self, step: str, timeout: float, output: str = ""):
        self.step = step
        self.timeout = timeout
        self.output = output
        super().__init__(f"step '{step}' exceeded {timeout:g}s")


@dataclass
class StepFailure(RelayError):
    job: str
    step: str
    exit_code: int
    output: str = field(default="", repr=False)

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"


# Names used in the public contract.
EnvironmentError = ExecutionEnvironmentError  # noqa: A001
TimeoutError = StepTimeoutError  # noqa: A001
