import time

import pytest

from relayci.errors import UnknownCommandError, WorkflowDefinitionError
from relayci.model import CommandRef, Job, Outcome, ShellStep, StepStatus, Workflow
from relayci.runner import JobRunner
from relayci.scheduler import WorkflowScheduler, build_dag, topo_levels


def _job(name, *bodies, **kwargs):
    steps = tuple(ShellStep(b, name=f"{name}-{i}") for i, b in enumerate(bodies, start=1))
    return Job(name=name, steps=steps, **kwargs)


def _scheduler(runner, registry, jobs, **kwargs):
    return WorkflowScheduler(runner, registry, {j.name: j for j in jobs}, **kwargs)


def test_independent_jobs_form_one_layer():
    wf = Workflow("build-and-test", ("linux", "macos", "windows"))
    assert topo_levels(*build_dag(wf)) == [["linux", "macos", "windows"]]


def test_requires_edges_form_layers():
    wf = Workflow("wf", ("build", "test", "lint"), requires={"test": ("build",)})
    assert topo_levels(*build_dag(wf)) == [["build", "lint"], ["test"]]


def test_cycle_is_rejected():
    wf = Workflow("wf", ("a", "b"), requires={"a": ("b",), "b": ("a",)})
    with pytest.raises(WorkflowDefinitionError):
        topo_levels(*build_dag(wf))


def test_requires_unknown_job_is_rejected():
    wf = Workflow("wf", ("a",), requires={"a": ("ghost",)})
    with pytest.raises(WorkflowDefinitionError):
        build_dag(wf)


def test_undefined_job_is_rejected(runner, registry):
    sched = _scheduler(runner, registry, [_job("a", "true")])
    with pytest.raises(WorkflowDefinitionError):
        sched.run(Workflow("wf", ("a", "b")))


def test_end_to_end_one_job_fails(runner, registry):
    a = _job(
        "A",
        "echo 1 > \"$RELAYCI_ARTIFACTS/a1\"",
        "echo 2 > \"$RELAYCI_ARTIFACTS/a2\"",
        "echo 3 > \"$RELAYCI_ARTIFACTS/a3\"",
    )
    b = _job(
        "B",
        "exit 1",
        "touch \"$RELAYCI_ARTIFACTS/b2\"",
    )
    result = _scheduler(runner, registry, [a, b]).run(Workflow("wf", ("A", "B")))

    ra, rb = result.jobs["A"], result.jobs["B"]
    assert ra.outcome is Outcome.SUCCESS
    assert rb.outcome is Outcome.FAILED
    assert rb.failing_index == 1
    assert rb.failing_step == "B-1"
    assert rb.exit_code == 1
    assert result.overall is Outcome.FAILED
    assert result.exit_code == 1

    assert (ra.staging_dir / "a3").exists()
    assert not (rb.staging_dir / "b2").exists()
    assert rb.steps[-1].status is StepStatus.SKIPPED


def test_failure_never_cancels_siblings(runner, registry):
    jobs = [_job(f"j{i}", "sleep 0.2", "true") for i in range(4)]
    jobs.append(_job("bad", "exit 2"))
    wf = Workflow("wf", tuple(j.name for j in jobs))

    result = _scheduler(runner, registry, jobs).run(wf)
    assert result.overall is Outcome.FAILED
    assert len(result.jobs) == 5
    assert [r.outcome for n, r in result.jobs.items() if n != "bad"] == [Outcome.SUCCESS] * 4
    assert result.jobs["bad"].outcome is Outcome.FAILED


def test_jobs_run_concurrently(runner, registry):
    jobs = [_job(f"j{i}", "sleep 1") for i in range(3)]
    started = time.monotonic()
    result = _scheduler(runner, registry, jobs).run(Workflow("wf", tuple(j.name for j in jobs)))
    assert result.overall is Outcome.SUCCESS
    assert time.monotonic() - started < 2.5


def test_all_success(runner, registry):
    result = _scheduler(runner, registry, [_job("a", "true"), _job("b", "true")]).run(Workflow("wf", ("a", "b")))
    assert result.overall is Outcome.SUCCESS
    assert result.exit_code == 0
    assert list(result.jobs) == ["a", "b"]


def test_dependent_of_failed_job_is_skipped(runner, registry, provider):
    jobs = [_job("build", "exit 1"), _job("test", "true"), _job("lint", "true")]
    wf = Workflow("wf", ("build", "test", "lint"), requires={"test": ("build",)})
    result = _scheduler(runner, registry, jobs).run(wf)

    assert result.jobs["build"].outcome is Outcome.FAILED
    assert result.jobs["test"].outcome is Outcome.SKIPPED
    assert result.jobs["lint"].outcome is Outcome.SUCCESS
    assert sorted(h.root.name for h in provider.acquired) == ["build", "lint"]


def test_resolution_errors_abort_before_any_job_starts(runner, registry, provider):
    jobs = [_job("good", "true"), Job(name="bad", steps=(CommandRef("missing"),))]
    with pytest.raises(UnknownCommandError):
        _scheduler(runner, registry, jobs).run(Workflow("wf", ("good", "bad")))
    assert provider.acquired == []


def test_timeout_scenario(provider, run_root, registry):
    runner = JobRunner(provider, run_root=run_root, registry=registry)
    job = Job(name="slow", steps=(ShellStep("sleep 5", timeout=1),))
    started = time.monotonic()
    result = _scheduler(runner, registry, [job]).run(Workflow("wf", ("slow",)))
    assert result.jobs["slow"].outcome is Outcome.TIMED_OUT
    assert time.monotonic() - started < 4


def test_max_workers_limits_parallelism(runner, registry):
    jobs = [_job(f"j{i}", "true") for i in range(3)]
    result = _scheduler(runner, registry, jobs, max_workers=1).run(Workflow("wf", tuple(j.name for j in jobs)))
    assert result.overall is Outcome.SUCCESS


def test_cycle_error_names_the_workflow():
    wf = Workflow("nightly", ("a", "b", "c"), requires={"a": ("b",), "b": ("a",)})
    with pytest.raises(WorkflowDefinitionError, match="nightly.*\\['a', 'b'\\]"):
        topo_levels(*build_dag(wf), workflow=wf.name)


def test_similar_job_names_get_private_staging(runner, registry):
    jobs = [
        Job(name="linux build", steps=(ShellStep("touch \"$RELAYCI_ARTIFACTS/from-space\"; sleep 0.3"),)),
        Job(name="linux_build", steps=(ShellStep("sleep 0.1; test -z \"$(ls -A \"$RELAYCI_ARTIFACTS\")\""),)),
    ]
    result = _scheduler(runner, registry, jobs).run(Workflow("wf", ("linux build", "linux_build")))

    spaced, underscored = result.jobs["linux build"], result.jobs["linux_build"]
    assert result.overall is Outcome.SUCCESS
    assert spaced.staging_dir != underscored.staging_dir
    assert (spaced.staging_dir / "from-space").exists()
