# runner.py
from __future__ import annotations

import hashlib
import re
import shutil
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from .environment import EnvironmentHandle, EnvironmentProvider
from .errors import (
    ExecutionEnvironmentError,
    ProvisioningError,
    StepFailure,
    StepTimeoutError,
)
from .executor import StepExecutor
from .model import Job, JobResult, Outcome, ResolvedJob, StepLog, StepStatus
from .registry import CommandRegistry
from .ui.console import get_console

CHECKOUT_STEP = "checkout"

# Never copied into a job workspace.
CHECKOUT_IGNORE = (".relayci", "__pycache__", ".pytest_cache")


def job_dirname(name: str) -> str:
    """
    Directory name of a job under the run root.

    Names that need cleaning get a short hash of the raw name, so "linux build"
    and "linux_build" never share a workspace or staging directory.
    """
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip(".") or "job"
    if cleaned == name:
        return cleaned
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned}-{digest}"


def _is_git_url(source: str) -> bool:
    return source.startswith(("git@", "git://", "ssh://", "http://", "https://", "file://"))


def _is_bare_repo(path: Path) -> bool:
    return (path / "HEAD").is_file() and (path / "objects").is_dir() and (path / "refs").is_dir()


def _clones(source: str) -> bool:
    if _is_git_url(source) or source.rstrip("/").endswith(".git"):
        return True
    path = Path(source).expanduser()
    return path.is_dir() and _is_bare_repo(path)


def checkout(source: Union[str, Path, None], dest: Path, ref: Optional[str] = None) -> str:
    """
    Populate `dest` (an empty workspace) from `source`.

    Working trees are copied; git URLs, `.git` paths and bare repositories
    are cloned. Returns a short description for the step log. Raises
    ExecutionEnvironmentError.
    """
    if source is None:
        return "no source configured, empty workspace"

    src = str(source)
    if _clones(src):
        cmds = [["git", "clone", "--quiet", src, "."]]
        if ref:
            cmds.append(["git", "checkout", "--quiet", ref])
        for cmd in cmds:
            try:
                proc = subprocess.run(cmd, cwd=dest, check=False, capture_output=True, text=True)
            except FileNotFoundError:
                raise ExecutionEnvironmentError("git command not found. Please install Git.")
            if proc.returncode != 0:
                raise ExecutionEnvironmentError(f"{' '.join(cmd[:2])} failed: {proc.stderr.strip()}")
        return f"cloned {src}" + (f" at {ref}" if ref else "")

    src_p = Path(src).expanduser().resolve()
    if not src_p.is_dir():
        raise ExecutionEnvironmentError(f"checkout source not found: {src_p}")
    dest_r = dest.resolve()

    def ignore(directory: str, names: List[str]) -> List[str]:
        skipped = [n for n in names if n in CHECKOUT_IGNORE]
        # the run root may live inside the source tree
        skipped += [n for n in names if (Path(directory) / n).resolve() == dest_r.parent.parent]
        return skipped

    try:
        shutil.copytree(src_p, dest, dirs_exist_ok=True, ignore=ignore, symlinks=True)
    except (OSError, shutil.Error) as e:
        raise ExecutionEnvironmentError(f"checkout failed: {e}") from e
    return f"copied {src_p}"


class JobRunner:
    """
    Runs one job: acquire environment -> fresh staging dir -> checkout ->
    steps in order (fail-fast) -> release environment.

    Every job-scoped error is caught here and recorded in the JobResult.
    """

    def __init__(
        self,
        provider: EnvironmentProvider,
        executor: Optional[StepExecutor] = None,
        *,
        run_root: Union[str, Path] = ".relayci/runs",
        source: Union[str, Path, None] = None,
        ref: Optional[str] = None,
        default_timeout: Optional[float] = None,
        base_env: Optional[Mapping[str, str]] = None,
        registry: Optional[CommandRegistry] = None,
    ):
        self.provider = provider
        self.executor = executor if executor is not None else StepExecutor()
        self.run_root = Path(run_root).resolve()
        self.source = source
        self.ref = ref
        self.default_timeout = default_timeout
        self.base_env = dict(base_env or {})
        self.registry = registry if registry is not None else CommandRegistry()

    def run(self, job: Union[Job, ResolvedJob]) -> JobResult:
        resolved = job if isinstance(job, ResolvedJob) else self.registry.resolve_job(job)
        spec = resolved.job.environment
        console = get_console()
        console.print_job_start(resolved.name, spec.describe())

        started = time.monotonic()
        result = JobResult(name=resolved.name, outcome=Outcome.SUCCESS)

        try:
            handle = self.provider.acquire(spec, self.run_root / job_dirname(resolved.name))
        except ProvisioningError as e:
            result.outcome = Outcome.ENVIRONMENT_ERROR
            result.error = str(e)
            result.steps = self._skipped([CHECKOUT_STEP] + [s.title for s in resolved.steps])
            result.duration = time.monotonic() - started
            console.print_failure(resolved.name, str(e), is_job=True)
            return result

        try:
            self._run_in(handle, resolved, result)
        finally:
            self.provider.release(handle)
            result.duration = time.monotonic() - started

        if result.ok:
            console.print_success(resolved.name)
        else:
            console.print_failure(
                resolved.name,
                result.error or result.outcome.value,
                exit_code=result.exit_code,
                is_job=True,
            )
        return result

    # ------------------------------------------------------------------

    def _run_in(self, handle: EnvironmentHandle, resolved: ResolvedJob, result: JobResult) -> None:
        job = resolved.job
        console = get_console()
        titles = [s.title for s in resolved.steps]

        # ---- staging + checkout ----
        t0 = time.monotonic()
        try:
            staging = handle.staging_dir
            if staging.exists():
                shutil.rmtree(staging)
            staging.mkdir(parents=True)
            result.staging_dir = staging
            console.print_step(resolved.name, CHECKOUT_STEP)
            note = checkout(self.source, handle.workspace, self.ref)
        except OSError as e:
            result.steps.append(
                StepLog(CHECKOUT_STEP, StepStatus.ERROR, output=str(e), duration=time.monotonic() - t0)
            )
            result.steps.extend(self._skipped(titles))
            result.outcome = Outcome.ENVIRONMENT_ERROR
            result.failing_step = CHECKOUT_STEP
            result.failing_index = 0
            result.error = f"checkout failed: {e}"
            return
        result.steps.append(StepLog(CHECKOUT_STEP, StepStatus.OK, exit_code=0, output=note, duration=time.monotonic() - t0))

        # ---- user steps ----
        env: Dict[str, str] = dict(self.base_env)
        env.update(job.env)
        env.update({
            "CI": "true",
            "RELAYCI_JOB": job.name,
            "RELAYCI_WORKSPACE": handle.path_in_env(handle.workspace),
            "RELAYCI_ARTIFACTS": handle.path_in_env(handle.staging_dir),
        })
        timeout = job.timeout or self.default_timeout

        for index, step in enumerate(resolved.steps, start=1):
            console.print_step(resolved.name, step.title)
            t0 = time.monotonic()
            try:
                outcome = self.executor.execute(step, handle, job.working_directory, env, timeout)
                if outcome.exit_code != 0:
                    raise StepFailure(
                        job=job.name, step=step.title, exit_code=outcome.exit_code, output=outcome.output
                    )
            except StepFailure as e:
                result.steps.append(StepLog(step.title, StepStatus.FAILED, e.exit_code, e.output, time.monotonic() - t0))
                self._fail(result, Outcome.FAILED, step.title, index, str(e), exit_code=e.exit_code)
                console.print_step_output(e.output)
            except StepTimeoutError as e:
                result.steps.append(StepLog(step.title, StepStatus.TIMED_OUT, None, e.output, time.monotonic() - t0))
                self._fail(result, Outcome.TIMED_OUT, step.title, index, str(e))
            except OSError as e:
                # ExecutionEnvironmentError and any other spawn / filesystem failure
                result.steps.append(StepLog(step.title, StepStatus.ERROR, None, str(e), time.monotonic() - t0))
                self._fail(result, Outcome.ENVIRONMENT_ERROR, step.title, index, str(e))
            else:
                result.steps.append(StepLog(step.title, StepStatus.OK, 0, outcome.output, outcome.duration))
                # explicit delta threading, never a shared global
                env = {**env, **outcome.env_delta}
                continue

            # fail-fast: the remaining steps are never executed
            result.steps.extend(self._skipped(titles[index:]))
            return

    @staticmethod
    def _fail(
        result: JobResult,
        outcome: Outcome,
        step: str,
        index: int,
        error: str,
        exit_code: Optional[int] = None,
    ) -> None:
        result.outcome = outcome
        result.failing_step = step
        result.failing_index = index
        result.exit_code = exit_code
        result.error = error

    @staticmethod
    def _skipped(titles: List[str]) -> List[StepLog]:
        return [StepLog(t, StepStatus.SKIPPED) for t in titles]
