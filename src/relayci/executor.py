# executor.py
from __future__ import annotations

import os
import posixpath
import re
import shlex
import signal
import subprocess
import time
import uuid
from string import Template
from typing import Dict, Mapping, Optional

from .environment import EnvironmentHandle
from .errors import ExecutionEnvironmentError, StepTimeoutError
from .model import ShellKind, ShellStep, StepOutcome
from .ui.console import get_console

# Steps append `export KEY=VALUE` lines to this file to pass variables on to
# the following steps of the same job.
ENV_FILE_VAR = "RELAYCI_ENV"
# CircleCI-style configs write to $BASH_ENV; posix steps get it as an alias.
BASH_ENV_VAR = "BASH_ENV"

_ASSIGNMENT = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


def prepare_body(body: str, shell: ShellKind) -> str:
    """Apply the line-ending / preamble rules of the target shell."""
    text = body.replace("\r\n", "\n")
    if shell is ShellKind.WINDOWS:
        text = "$ErrorActionPreference = 'Stop'\n" + text
        return text.replace("\n", "\r\n")
    return text


def effective_timeout(step: ShellStep, ceiling: Optional[float]) -> Optional[float]:
    limits = [t for t in (step.timeout, ceiling) if t]
    return min(limits) if limits else None


def parse_env_delta(text: str, scope: Mapping[str, str]) -> Dict[str, str]:
    """
    Parse `[export ]KEY=VALUE` lines into a mapping.

    Values go through shell-style quote removal; `$VAR` / `${VAR}` refer to
    `scope` or to variables assigned earlier in the same file. Lines that are
    not assignments (eval, ulimit, ...) are ignored.
    """
    delta: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _ASSIGNMENT.match(line)
        if not m:
            get_console().print_debug(f"ignoring non-assignment in {ENV_FILE_VAR}: {line}")
            continue
        key, value = m.group(1), m.group(2).strip()
        literal = len(value) >= 2 and value[0] == value[-1] == "'"
        try:
            parts = shlex.split(value, posix=True)
            value = " ".join(parts)
        except ValueError:
            pass
        if not literal:
            value = Template(value).safe_substitute({**scope, **delta})
        delta[key] = value
    return delta


def _kill(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


class StepExecutor:
    """
    Runs exactly one ShellStep inside an environment handle.

    Command references never reach the executor; they are expanded by the
    registry beforehand.
    """

    def __init__(self, output_limit: int = 256_000):
        self.output_limit = output_limit

    def execute(
        self,
        step: ShellStep,
        handle: EnvironmentHandle,
        cwd: Optional[str],
        base_env: Mapping[str, str],
        timeout: Optional[float] = None,
    ) -> StepOutcome:
        limit = effective_timeout(step, timeout)

        env: Dict[str, str] = dict(base_env)
        env.update(step.env)  # step-level wins

        rel = step.cwd
        if cwd and (not rel or not posixpath.isabs(rel)):
            rel = posixpath.join(cwd, rel) if rel else cwd
        work_cwd = handle.resolve_cwd(rel)

        env_dir = handle.root / "env"
        env_dir.mkdir(parents=True, exist_ok=True)
        env_file = env_dir / f"{uuid.uuid4().hex}.env"
        env_file.touch()
        env[ENV_FILE_VAR] = handle.path_in_env(env_file)
        if handle.spec.shell is ShellKind.POSIX:
            env[BASH_ENV_VAR] = env[ENV_FILE_VAR]

        argv = handle.shell_program + [prepare_body(step.body, handle.spec.shell)]
        inv = handle.invocation(argv, work_cwd, env)

        started = time.monotonic()
        try:
            try:
                proc = subprocess.Popen(
                    inv.argv,
                    cwd=inv.cwd,
                    env=inv.env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    start_new_session=(os.name == "posix"),
                )
            except OSError as e:
                raise ExecutionEnvironmentError(f"could not start step '{step.title}': {e}") from e

            try:
                raw, _ = proc.communicate(timeout=limit)
            except subprocess.TimeoutExpired:
                _kill(proc)
                raw, _ = proc.communicate()
                raise StepTimeoutError(step.title, limit or 0, self._decode(raw))

            output = self._decode(raw)
            delta: Dict[str, str] = {}
            if proc.returncode == 0:
                scope = dict(inv.env) if handle.container is None else dict(env)
                delta = parse_env_delta(env_file.read_text(encoding="utf-8", errors="replace"), scope)
                delta.pop(ENV_FILE_VAR, None)
                delta.pop(BASH_ENV_VAR, None)

            return StepOutcome(
                exit_code=proc.returncode,
                output=output,
                env_delta=delta,
                duration=time.monotonic() - started,
            )
        finally:
            try:
                env_file.unlink()
            except FileNotFoundError:
                pass

    def _decode(self, raw: Optional[bytes]) -> str:
        text = (raw or b"").decode("utf-8", errors="replace")
        if len(text) > self.output_limit:
            text = text[-self.output_limit:]
        return text
