import textwrap
from pathlib import Path

import pytest
import yaml

from relayci.errors import PipelineError, UnknownCommandError
from relayci.loader import discover_pipeline, load_pipeline, parse_duration, parse_pipeline
from relayci.model import CommandRef, EnvKind, Outcome, ShellKind, ShellStep
from relayci.runner import JobRunner

FIXTURE = Path(__file__).parent / "fixtures" / "multiplatform.yml"


@pytest.fixture
def loaded():
    return load_pipeline(FIXTURE)


def test_commands_are_registered(loaded):
    assert loaded.registry.names() == [
        "build",
        "build_example",
        "print_versions",
        "setup_linux_env",
        "setup_macos_env",
        "setup_windows_env",
    ]
    build = loaded.registry.get("build")
    assert build.parameters["profile"].default == "debug"
    assert loaded.registry.get("build_example").parameters["dir"].required


def test_environments(loaded):
    linux = loaded.jobs["linux-build-and-test"].environment
    assert linux.kind is EnvKind.CONTAINER
    assert linux.image_or_os == "cimg/rust:1.65.0"
    assert linux.resource_tier == "xlarge"

    mac = loaded.jobs["macos-build-and-test"].environment
    assert mac.kind is EnvKind.VM
    assert mac.platform == "macos"
    assert mac.resource_tier == "macos.m1.medium.gen1"

    win = loaded.jobs["windows-build-and-test"].environment
    assert win.kind is EnvKind.CUSTOM
    assert win.shell is ShellKind.WINDOWS
    assert win.resource_tier == "xlarge"
    assert win.image_or_os == "win/default"


def test_checkout_is_implicit(loaded):
    steps = loaded.jobs["linux-build-and-test"].steps
    assert steps[0] == CommandRef("setup_linux_env")
    assert isinstance(steps[-1], ShellStep)
    assert steps[-1].body == "python3 test.py --ci --git"


def test_workflow_has_no_edges(loaded):
    wf = loaded.workflow()
    assert wf.name == "build-and-test"
    assert len(wf.jobs) == 4
    assert dict(wf.requires) == {}


def test_plan_resolves_everything(loaded):
    levels, resolved = loaded.plan()
    assert len(levels) == 1
    examples = resolved["linux-build-examples"]
    titles = [s.title for s in examples.steps]
    assert "Build buck2 binary (release)" in titles
    assert "Build no_prelude" in titles
    build_example = [s for s in examples.steps if s.title == "Build no_prelude"][0]
    assert build_example.cwd == "examples/no_prelude"

    linux_titles = [s.title for s in resolved["linux-build-and-test"].steps]
    assert linux_titles[0] == "sudo apt-get update"
    assert "Version Info" in linux_titles
    assert "Build buck2 binary (debug)" in linux_titles


def test_validate_passes(loaded):
    loaded.validate()


def test_unknown_command_in_job_fails_validation():
    p = parse_pipeline({"jobs": {"j": {"steps": ["checkout", "nope"]}}})
    with pytest.raises(UnknownCommandError):
        p.validate()


def test_run_step_mapping():
    p = parse_pipeline({
        "jobs": {
            "j": {
                "environment": {"MODE": "debug", "VERBOSE": True},
                "timeout": "10m",
                "steps": [{
                    "run": {
                        "name": "Build",
                        "command": "make",
                        "environment": {"JOBS": 6},
                        "working_directory": "sub",
                        "no_output_timeout": "30s",
                    }
                }],
            }
        }
    })
    job = p.jobs["j"]
    assert job.env == {"MODE": "debug", "VERBOSE": "true"}
    assert job.timeout == 600
    assert job.steps == (ShellStep("make", name="Build", env={"JOBS": "6"}, cwd="sub", timeout=30.0),)


def test_named_executor():
    p = parse_pipeline({
        "executors": {
            "rust": {
                "docker": [{"image": "cimg/rust:1.65.0"}],
                "resource_class": "large",
                "environment": {"RUST_BACKTRACE": 1},
                "working_directory": "app",
            }
        },
        "jobs": {"j": {"executor": "rust", "steps": [{"run": "cargo test"}]}},
    })
    job = p.jobs["j"]
    assert job.environment.image_or_os == "cimg/rust:1.65.0"
    assert job.environment.resource_tier == "large"
    assert job.env == {"RUST_BACKTRACE": "1"}
    assert job.working_directory == "app"


def test_unknown_executor():
    with pytest.raises(PipelineError):
        parse_pipeline({"jobs": {"j": {"executor": "nope", "steps": []}}})


def test_workflow_requires():
    p = parse_pipeline({
        "jobs": {"a": {"steps": [{"run": "true"}]}, "b": {"steps": [{"run": "true"}]}},
        "workflows": {
            "version": 2,
            "wf": {"jobs": ["a", {"b": {"requires": ["a"]}}]},
        },
    })
    wf = p.workflow("wf")
    assert wf.jobs == ("a", "b")
    assert wf.needs_of("b") == ["a"]


def test_no_workflow_means_all_jobs():
    p = parse_pipeline({"jobs": {"a": {"steps": [{"run": "true"}]}}})
    assert p.workflow().jobs == ("a",)


def test_malformed_step():
    with pytest.raises(PipelineError):
        parse_pipeline({"jobs": {"j": {"steps": [{"run": "x", "extra": 1}]}}})


@pytest.mark.parametrize(
    "value,expected",
    [(None, None), (5, 5.0), ("30s", 30.0), ("10m", 600.0), ("1.5h", 5400.0), ("12", 12.0)],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


def test_parse_duration_invalid():
    with pytest.raises(PipelineError):
        parse_duration("soon")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "relayci.yml"
    path.write_text("jobs: [unclosed\n")
    with pytest.raises(PipelineError):
        load_pipeline(path)


def test_python_pipeline(tmp_path):
    path = tmp_path / "relayci_pipeline.py"
    path.write_text(
        "from relayci import pipeline, job, sh, workflow\n"
        "PIPELINE = pipeline('py', jobs=[job('a', sh('hi', 'echo hi'))],\n"
        "                    workflows=[workflow('wf', 'a')])\n"
    )
    p = load_pipeline(path)
    assert p.name == "py"
    assert p.workflow().jobs == ("a",)


def test_python_pipeline_without_definition(tmp_path):
    path = tmp_path / "empty_pipeline.py"
    path.write_text("X = 1\n")
    with pytest.raises(PipelineError):
        load_pipeline(path)


def test_discover_pipeline(tmp_path):
    with pytest.raises(PipelineError):
        discover_pipeline(tmp_path)
    (tmp_path / "relayci.yml").write_text(yaml.safe_dump({"jobs": {}}))
    assert discover_pipeline(tmp_path).name == "relayci.yml"


def test_docker_image_must_be_a_mapping():
    with pytest.raises(PipelineError, match="docker"):
        parse_pipeline({"jobs": {"j": {"docker": ["cimg/rust:1.65.0"], "steps": [{"run": "true"}]}}})


def test_bash_env_exports_reach_later_steps(provider, run_root):
    p = parse_pipeline(yaml.safe_load(textwrap.dedent(
        """
        commands:
          setup_linux_env:
            steps:
              - run:
                  name: Limit CPUs
                  command: echo 'export CARGO_BUILD_JOBS="6"' >> "$BASH_ENV"
        jobs:
          build:
            steps:
              - checkout
              - setup_linux_env
              - run: test "$CARGO_BUILD_JOBS" = 6
        """
    )))
    runner = JobRunner(provider, run_root=run_root, registry=p.registry)
    result = runner.run(p.jobs["build"])
    assert result.outcome is Outcome.SUCCESS, result.error


@pytest.mark.parametrize(
    "source",
    [
        "from relayci import per_platform, docker\n"
        "per_platform(docker('img'), {'macos': 'setup_macos_env'})\n",
        "def build_pipeline(:\n",
        "import relayci_no_such_module\n",
    ],
)
def test_python_pipeline_errors_are_pipeline_errors(tmp_path, source):
    path = tmp_path / "broken_pipeline.py"
    path.write_text(source)
    with pytest.raises(PipelineError, match="broken_pipeline.py"):
        load_pipeline(path)
