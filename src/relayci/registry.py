# registry.py
from __future__ import annotations

import re
from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import (
    CyclicReferenceError,
    DuplicateNameError,
    MissingParameterError,
    ResolutionDepthError,
    UnexpectedParameterError,
    UnknownCommandError,
)
from .model import Command, CommandRef, Job, Parameter, ResolvedJob, ShellStep, Step

# << parameters.name >> and << environment.resource_tier >>
PLACEHOLDER = re.compile(r"<<\s*(parameters|environment)\.([A-Za-z_][\w-]*)\s*>>")

DEFAULT_MAX_DEPTH = 32

ParameterDecl = Union[
    Mapping[str, Optional[str]],
    Mapping[str, Parameter],
    Iterable[Parameter],
    None,
]


def normalize_parameters(parameters: ParameterDecl) -> Dict[str, Parameter]:
    if not parameters:
        return {}
    out: Dict[str, Parameter] = {}
    if isinstance(parameters, Mapping):
        for name, value in parameters.items():
            if isinstance(value, Parameter):
                out[name] = value if value.name == name else replace(value, name=name)
            else:
                out[name] = Parameter(name=name, default=None if value is None else str(value))
    else:
        for p in parameters:
            out[p.name] = p
    return out


class CommandRegistry:
    """
    Named, parameterizable step templates.

    Resolution is depth-first and pure: it only expands data. A command may
    reference other commands through CommandRef steps; re-entering a command
    already on the current chain is a CyclicReferenceError.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self._commands: Dict[str, Command] = {}
        self.max_depth = max_depth

    # ------------------------------------------------------------------
    # Registration / lookup
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        description: str = "",
        steps: Sequence[Step] = (),
        parameters: ParameterDecl = None,
    ) -> Command:
        command = Command(
            name=name,
            steps=tuple(steps),
            description=description,
            parameters=normalize_parameters(parameters),
        )
        return self.add(command)

    def add(self, command: Command) -> Command:
        if command.name in self._commands:
            raise DuplicateNameError(command.name)
        self._commands[command.name] = command
        return command

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return sorted(self._commands)

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    def __len__(self) -> int:
        return len(self._commands)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(
        self,
        name: str,
        args: Optional[Mapping[str, str]] = None,
        context: Optional[Mapping[str, str]] = None,
    ) -> List[ShellStep]:
        """Expand command `name` into shell steps with `args` bound."""
        return self._resolve(name, dict(args or {}), [], context)

    def resolve_steps(
        self,
        steps: Sequence[Step],
        context: Optional[Mapping[str, str]] = None,
        scope: str = "job",
    ) -> List[ShellStep]:
        """Expand a job-level step list (no parameter bindings)."""
        return self._expand(steps, {}, scope, [], context)

    def resolve_job(self, job: Job) -> ResolvedJob:
        steps = self.resolve_steps(job.steps, context=job.environment.context(), scope=job.name)
        return ResolvedJob(job=job, steps=tuple(steps))

    def _resolve(
        self,
        name: str,
        args: Dict[str, str],
        chain: List[str],
        context: Optional[Mapping[str, str]],
    ) -> List[ShellStep]:
        if name in chain:
            raise CyclicReferenceError(chain + [name])
        if len(chain) >= self.max_depth:
            raise ResolutionDepthError(chain + [name], self.max_depth)

        command = self._commands.get(name)
        if command is None:
            raise UnknownCommandError(name, list(self._commands))

        unexpected = [a for a in args if a not in command.parameters]
        if unexpected:
            raise UnexpectedParameterError(name, unexpected)

        bindings = {
            p.name: p.default for p in command.parameters.values() if p.default is not None
        }
        bindings.update(args)
        return self._expand(command.steps, bindings, name, chain + [name], context)

    def _expand(
        self,
        steps: Sequence[Step],
        bindings: Mapping[str, str],
        scope: str,
        chain: List[str],
        context: Optional[Mapping[str, str]],
    ) -> List[ShellStep]:
        out: List[ShellStep] = []
        for step in steps:
            if isinstance(step, ShellStep):
                out.append(self._render_step(step, bindings, scope, context))
            elif isinstance(step, CommandRef):
                # args may themselves use the enclosing command's parameters
                args = {
                    k: substitute(str(v), bindings, scope, context) for k, v in step.args.items()
                }
                out.extend(self._resolve(step.command, args, chain, context))
            else:
                raise TypeError(f"Not a step: {step!r}")
        return out

    @staticmethod
    def _render_step(
        step: ShellStep,
        bindings: Mapping[str, str],
        scope: str,
        context: Optional[Mapping[str, str]],
    ) -> ShellStep:
        def sub(text: str) -> str:
            return substitute(text, bindings, scope, context)

        return replace(
            step,
            body=sub(step.body),
            name=sub(step.name) if step.name else step.name,
            env={k: sub(str(v)) for k, v in step.env.items()},
            cwd=sub(step.cwd) if step.cwd else step.cwd,
        )


def substitute(
    text: str,
    bindings: Mapping[str, str],
    scope: str,
    context: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Replace << parameters.x >> / << environment.x >> placeholders.

    Environment placeholders are left untouched when no context is given so a
    later pass (job resolution) can fill them in.
    """
    def repl(m: "re.Match[str]") -> str:
        namespace, key = m.group(1), m.group(2)
        if namespace == "parameters":
            if key not in bindings:
                raise MissingParameterError(scope, key)
            return str(bindings[key])
        if context is None:
            return m.group(0)
        if key not in context:
            raise MissingParameterError(scope, f"environment.{key}")
        return str(context[key])

    return PLACEHOLDER.sub(repl, text)
