from .dsl import job, sh, use, command, param, matrix, workflow, pipeline, per_platform, JobBuilder, build
from .dsl import docker, machine, macos, windows, host
from .model import Job, ShellStep, CommandRef, Command, EnvironmentSpec, Workflow, Outcome, JobResult, WorkflowResult
from .pipeline import Pipeline, run_pipeline
from .registry import CommandRegistry
from .loader import load_pipeline

__all__ = [
    "job", "sh", "use", "command", "param", "matrix", "workflow", "pipeline", "per_platform",
    "JobBuilder", "build", "docker", "machine", "macos", "windows", "host",
    "Job", "ShellStep", "CommandRef", "Command", "EnvironmentSpec", "Workflow",
    "Outcome", "JobResult", "WorkflowResult", "Pipeline", "run_pipeline",
    "CommandRegistry", "load_pipeline",
]
