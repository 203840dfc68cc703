# pipeline.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import Settings
from .environment import EnvironmentProvider, default_provider
from .errors import DuplicateNameError, WorkflowDefinitionError
from .executor import StepExecutor
from .model import Job, ResolvedJob, Workflow, WorkflowResult
from .registry import CommandRegistry
from .runner import JobRunner
from .scheduler import WorkflowScheduler, plan


@dataclass
class Pipeline:
    """Commands + jobs + workflows, as loaded from one pipeline file."""
    name: str = "pipeline"
    registry: CommandRegistry = field(default_factory=CommandRegistry)
    jobs: Dict[str, Job] = field(default_factory=dict)
    workflows: Dict[str, Workflow] = field(default_factory=dict)

    def add_job(self, job: Job) -> Job:
        if job.name in self.jobs:
            raise DuplicateNameError(job.name, kind="job")
        self.jobs[job.name] = job
        return job

    def add_workflow(self, workflow: Workflow) -> Workflow:
        if workflow.name in self.workflows:
            raise DuplicateNameError(workflow.name, kind="workflow")
        self.workflows[workflow.name] = workflow
        return workflow

    def workflow(self, name: Optional[str] = None) -> Workflow:
        """
        Pick a workflow by name. Without a name: the only workflow, or an
        implicit one running every job when none is declared.
        """
        if name is not None:
            if name not in self.workflows:
                raise WorkflowDefinitionError(
                    f"Unknown workflow '{name}'. Known workflows: {sorted(self.workflows)}"
                )
            return self.workflows[name]
        if not self.workflows:
            return Workflow(name=self.name, jobs=tuple(self.jobs))
        if len(self.workflows) == 1:
            return next(iter(self.workflows.values()))
        raise WorkflowDefinitionError(
            f"Pipeline defines several workflows, pick one: {sorted(self.workflows)}"
        )

    def plan(self, name: Optional[str] = None) -> tuple[List[List[str]], Dict[str, ResolvedJob]]:
        return plan(self.workflow(name), self.jobs, self.registry)

    def validate(self) -> None:
        """Resolve every workflow (or all jobs) without running anything."""
        workflows: Iterable[Workflow] = self.workflows.values() or [self.workflow()]
        for wf in workflows:
            plan(wf, self.jobs, self.registry)
        for job in self.jobs.values():
            self.registry.resolve_job(job)


def run_pipeline(
    pipeline: Pipeline,
    workflow: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    provider: Optional[EnvironmentProvider] = None,
    executor: Optional[StepExecutor] = None,
) -> WorkflowResult:
    settings = settings or Settings()
    provider = provider or default_provider(
        host_only=settings.host_only,
        images=settings.images,
        tiers=settings.tiers,
    )
    runner = JobRunner(
        provider,
        executor,
        run_root=settings.run_root,
        source=settings.source,
        ref=settings.ref,
        default_timeout=settings.step_timeout,
        registry=pipeline.registry,
    )
    scheduler = WorkflowScheduler(runner, pipeline.registry, pipeline.jobs, max_workers=settings.workers)
    return scheduler.run(pipeline.workflow(workflow))
