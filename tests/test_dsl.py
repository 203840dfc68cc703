import pytest

from relayci import dsl
from relayci.errors import DuplicateNameError
from relayci.model import CommandRef, EnvKind, ShellKind, ShellStep


def test_use_stringifies_arguments():
    ref = dsl.use("build", profile="release", strip=True, jobs=6)
    assert ref == CommandRef("build", {"profile": "release", "strip": "true", "jobs": "6"})


def test_command_parameters():
    cmd = dsl.command(
        "build",
        dsl.sh("Build", "cargo build --<< parameters.profile >>"),
        parameters={"profile": "debug", "target": None},
    )
    assert cmd.parameters["profile"].default == "debug"
    assert cmd.parameters["target"].required


def test_command_needs_steps():
    with pytest.raises(ValueError):
        dsl.command("empty")


def test_environments():
    assert dsl.docker("cimg/rust:1.65.0", "xlarge").kind is EnvKind.CONTAINER
    assert dsl.macos("14.2.0").platform == "macos"
    win = dsl.windows(tier="xlarge")
    assert win.shell is ShellKind.WINDOWS
    assert win.platform == "windows"
    assert dsl.host().platform == "linux"


def test_per_platform_picks_setup_at_definition_time():
    choices = {"linux": "setup_linux_env", "macos": "setup_macos_env", "windows": dsl.sh("Setup", "choco install llvm")}
    assert dsl.per_platform(dsl.macos("14.2.0"), choices) == CommandRef("setup_macos_env")
    assert isinstance(dsl.per_platform(dsl.windows(), choices), ShellStep)


def test_per_platform_without_choice():
    with pytest.raises(ValueError):
        dsl.per_platform(dsl.windows(), {"linux": "setup_linux_env"})


def test_job_builder():
    job = (
        dsl.build("linux")
        .runs_on(dsl.docker("cimg/rust:1.65.0"))
        .use("setup_linux_env")
        .define_step("Test", "python3 test.py --ci", cwd="buck2")
        .with_env(CARGO_BUILD_JOBS=6)
        .in_directory("src")
        .with_timeout(600)
        .build()
    )
    assert job.name == "linux"
    assert job.steps[0] == CommandRef("setup_linux_env")
    assert job.steps[1].cwd == "buck2"
    assert job.env == {"CARGO_BUILD_JOBS": "6"}
    assert job.working_directory == "src"
    assert job.timeout == 600


def test_job_builder_requires_steps():
    with pytest.raises(ValueError):
        dsl.build("empty").build()


def test_matrix_expands_jobs():
    envs = [dsl.docker("cimg/rust:1.65.0"), dsl.macos("14.2.0")]
    jobs = dsl.matrix("env", envs).jobs(
        lambda env: dsl.job(f"build-{env.platform}", dsl.use("build"), environment=env)
    )
    assert [j.name for j in jobs] == ["build-linux", "build-macos"]


def test_workflow_from_jobs_and_names():
    a = dsl.job("a", dsl.sh("a", "true"))
    wf = dsl.workflow("wf", a, "b", requires={"b": ["a"]})
    assert wf.jobs == ("a", "b")
    assert wf.needs_of("b") == ["a"]


def test_pipeline_rejects_duplicate_jobs():
    a = dsl.job("a", dsl.sh("a", "true"))
    with pytest.raises(DuplicateNameError):
        dsl.pipeline("p", jobs=[a, a])


def test_pipeline_rejects_duplicate_commands():
    cmd = dsl.command("c", dsl.sh("c", "true"))
    with pytest.raises(DuplicateNameError):
        dsl.pipeline("p", commands=[cmd, cmd])
