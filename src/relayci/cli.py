# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from relayci.config import Settings, load_settings
from relayci.errors import PipelineError
from relayci.loader import discover_pipeline, load_pipeline
from relayci.pipeline import Pipeline, run_pipeline
from relayci.report import write_report
from relayci.ui.console import Console, get_console, set_console

EXIT_JOB_FAILED = 1
EXIT_DEFINITION_ERROR = 2


def _load(pipeline_arg: str | None) -> tuple[Path, Pipeline]:
    """
    Resolve the pipeline path (argument or discovery) and load it.

    Exits with EXIT_DEFINITION_ERROR when the file is missing or malformed.
    """
    console = get_console()
    try:
        path = Path(pipeline_arg) if pipeline_arg else discover_pipeline(".")
        return path, load_pipeline(path)
    except PipelineError as e:
        console.print_error(
            "Could not load pipeline",
            str(e),
            suggestion="Pass a pipeline explicitly:\n  relayci run path/to/relayci.yml",
        )
        sys.exit(EXIT_DEFINITION_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: run declarative multi-platform build-and-test pipelines."""
    settings = load_settings()
    debug = debug or settings.debug
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--workflow", default=None, help="Workflow to run (defaults to the only one)")
@click.option("--workers", default=None, type=int, help="Max jobs running at once (default: whole layer)")
@click.option("--run-root", default=None, type=click.Path(path_type=Path), help="Where job workspaces and artifacts live")
@click.option("--timeout", "step_timeout", default=None, type=float, help="Default per-step timeout ceiling (seconds)")
@click.option("--source", default=None, help="Checkout source: a directory or a git URL")
@click.option("--ref", default=None, help="Git ref to check out when the source is a git URL")
@click.option("--host-only/--containers", default=None, help="Run container jobs on the host instead of docker")
@click.option("--image", "images", multiple=True, help="Allowed image (repeatable; default: any)")
@click.option("--tier", "tiers", multiple=True, help="Allowed resource tier (repeatable; default: any)")
@click.option("--report", default=None, type=click.Path(path_type=Path), help="Write a JSON result report")
@click.option("--report-output/--no-report-output", default=False, help="Include step output in the report")
@click.pass_context
def run(ctx, pipeline, workflow, workers, run_root, step_timeout, source, ref, host_only, images, tiers, report, report_output):
    """Run a workflow of a pipeline."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(
        workers=workers,
        run_root=run_root,
        step_timeout=step_timeout,
        source=source,
        ref=ref,
        host_only=host_only,
        images=list(images) or None,
        tiers=list(tiers) or None,
        debug=ctx.obj["debug"],
    )

    path, loaded = _load(pipeline)
    try:
        wf = loaded.workflow(workflow)
        console.print_run_started(pipeline=str(path), workflow=wf.name, job_count=len(wf.jobs))
        result = run_pipeline(loaded, workflow, settings=settings)
    except PipelineError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_DEFINITION_ERROR)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    console.print_results(result)
    if report:
        written = write_report(result, report, include_output=report_output)
        console.print_info(f"Report written to {written}")
    if result.exit_code != 0:
        sys.exit(EXIT_JOB_FAILED)


@cli.command()
@click.argument("pipeline", required=False)
def validate(pipeline):
    """Resolve every command reference and workflow without running anything."""
    console = get_console()
    path, loaded = _load(pipeline)
    try:
        loaded.validate()
    except PipelineError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_DEFINITION_ERROR)
    console.print_info(
        f"{path}: OK ({len(loaded.registry)} commands, {len(loaded.jobs)} jobs, "
        f"{len(loaded.workflows)} workflows)"
    )


@cli.command()
@click.argument("pipeline", required=False)
@click.option("--workflow", default=None, help="Workflow to plan (defaults to the only one)")
def plan(pipeline, workflow):
    """Show the layers, environments and expanded steps of a workflow."""
    console = get_console()
    _path, loaded = _load(pipeline)
    try:
        wf = loaded.workflow(workflow)
        levels, resolved = loaded.plan(workflow)
    except PipelineError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_DEFINITION_ERROR)

    console.print_header(f"Workflow: {wf.name}")
    for index, level in enumerate(levels, start=1):
        console.print_layer(index, level)
        for name in level:
            job = resolved[name]
            console.print_plan_job(name, job.job.environment.describe())
            console.print_plan_step("checkout")
            for step in job.steps:
                console.print_plan_step(step.title)


@cli.command()
@click.argument("pipeline", required=False)
def commands(pipeline):
    """List the reusable commands of a pipeline."""
    console = get_console()
    _path, loaded = _load(pipeline)
    for name in loaded.registry.names():
        cmd = loaded.registry.get(name)
        params = ", ".join(
            p.name if p.required else f"{p.name}={p.default}" for p in cmd.parameters.values()
        )
        line = f"  {name}"
        if params:
            line += f"({params})"
        if cmd.description:
            line += f": {cmd.description}"
        console.print_info(line)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
