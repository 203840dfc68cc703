# scheduler.py
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Mapping, Set, Tuple

from .errors import WorkflowDefinitionError
from .model import Job, JobResult, Outcome, ResolvedJob, StepLog, StepStatus, Workflow, WorkflowResult
from .registry import CommandRegistry
from .runner import CHECKOUT_STEP, JobRunner
from .ui.console import get_console


def build_dag(workflow: Workflow) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the job graph of a workflow.

    Edge `needed -> job` means `needed` must reach a terminal outcome first.
    """
    names = list(workflow.jobs)
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise WorkflowDefinitionError(f"Workflow '{workflow.name}' lists jobs more than once: {dupes}")

    name_set = set(names)
    unknown = sorted(set(workflow.requires) - name_set)
    if unknown:
        raise WorkflowDefinitionError(
            f"Workflow '{workflow.name}' has requires for jobs it does not run: {unknown}"
        )

    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for name in names:
        for needed in workflow.needs_of(name):
            if needed not in name_set:
                raise WorkflowDefinitionError(
                    f"Job '{name}' requires missing job '{needed}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if name not in adj[needed]:
                adj[needed].add(name)
                indeg[name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    workflow: str = "workflow",
) -> List[List[str]]:
    """
    Group jobs into layers: a job lands in the layer after the last job it
    requires. Jobs within a layer are sorted by name. No edges -> one layer.
    """
    waiting = dict(indeg)
    frontier = sorted(n for n, d in waiting.items() if d == 0)
    levels: List[List[str]] = []

    while frontier:
        levels.append(frontier)
        for name in frontier:
            del waiting[name]
        unblocked: Set[str] = set()
        for name in frontier:
            for dependent in adj.get(name, ()):
                waiting[dependent] -= 1
                if waiting[dependent] == 0:
                    unblocked.add(dependent)
        frontier = sorted(unblocked)

    if waiting:
        raise WorkflowDefinitionError(
            f"Workflow '{workflow}' has a requires cycle: jobs {sorted(waiting)} "
            "wait on each other and can never start"
        )
    return levels


def plan(
    workflow: Workflow,
    jobs: Mapping[str, Job],
    registry: CommandRegistry,
) -> Tuple[List[List[str]], Dict[str, ResolvedJob]]:
    """
    Resolve every job and compute the layers.

    Any definition error surfaces here, before a single process is spawned.
    """
    missing = [n for n in workflow.jobs if n not in jobs]
    if missing:
        raise WorkflowDefinitionError(
            f"Workflow '{workflow.name}' references undefined job(s): {missing}"
        )
    levels = topo_levels(*build_dag(workflow), workflow=workflow.name)
    resolved = {name: registry.resolve_job(jobs[name]) for name in workflow.jobs}
    return levels, resolved


class WorkflowScheduler:
    """
    Runs a workflow layer by layer; jobs in one layer run concurrently.

    A failing job never cancels its siblings. A job whose requirement did
    not succeed is recorded as skipped.
    """

    def __init__(
        self,
        runner: JobRunner,
        registry: CommandRegistry,
        jobs: Mapping[str, Job],
        max_workers: int | None = None,
    ):
        self.runner = runner
        self.registry = registry
        self.jobs = dict(jobs)
        self.max_workers = max_workers

    def run(self, workflow: Workflow) -> WorkflowResult:
        levels, resolved = plan(workflow, self.jobs, self.registry)
        console = get_console()
        result = WorkflowResult(name=workflow.name)

        for level_idx, level in enumerate(levels, start=1):
            console.print_layer(level_idx, level)

            runnable: List[str] = []
            for name in level:
                blocked = [d for d in workflow.needs_of(name) if not result.jobs[d].ok]
                if blocked:
                    result.jobs[name] = self._skipped(resolved[name], blocked)
                    console.print_job_skipped(name, f"required job(s) did not succeed: {blocked}")
                else:
                    runnable.append(name)

            if not runnable:
                continue

            workers = self.max_workers or len(runnable)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="relayci-job") as pool:
                futures = {pool.submit(self.runner.run, resolved[name]): name for name in runnable}
                for future in as_completed(futures):
                    name = futures[future]
                    try:
                        result.jobs[name] = future.result()
                    except Exception as e:
                        # the runner records job-scoped errors itself; this is a bug path
                        console.print_exception(e)
                        result.jobs[name] = JobResult(
                            name=name,
                            outcome=Outcome.ENVIRONMENT_ERROR,
                            error=f"{type(e).__name__}: {e}",
                        )

        # report in declaration order
        result.jobs = {name: result.jobs[name] for name in workflow.jobs}
        return result

    @staticmethod
    def _skipped(job: ResolvedJob, blocked: List[str]) -> JobResult:
        titles = [CHECKOUT_STEP] + [s.title for s in job.steps]
        return JobResult(
            name=job.name,
            outcome=Outcome.SKIPPED,
            steps=[StepLog(t, StepStatus.SKIPPED) for t in titles],
            error=f"required job(s) did not succeed: {blocked}",
        )
