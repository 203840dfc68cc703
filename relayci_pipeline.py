# relayci_pipeline.py
# Pipeline for relayci itself: tests on linux and macos, lint, packaging check
from __future__ import annotations

from relayci.dsl import command, docker, job, macos, per_platform, pipeline, sh, use, workflow

SETUP = {"linux": "setup_linux_env", "macos": "setup_macos_env"}


def build_pipeline():
    linux = docker("cimg/python:3.12", tier="medium")
    mac = macos("14.2.0")

    return pipeline(
        "relayci",
        commands=[
            command(
                "setup_linux_env",
                sh("Install package", "python3 -m pip install -e '.[test]'"),
                description="Install relayci with its test extra",
            ),
            command(
                "setup_macos_env",
                sh("Install python", "brew install python@3.12"),
                sh("Install package", "python3 -m pip install -e '.[test]'"),
                description="Install python and relayci on a macos VM",
            ),
            command(
                "pytest",
                sh("Run pytest", "python3 -m pytest -q << parameters.args >>"),
                description="Run the test suite",
                parameters={"args": ""},
            ),
        ],
        jobs=[
            # Test jobs - one per platform, setup picked from the environment
            job(
                "test-linux",
                per_platform(linux, SETUP),
                use("pytest"),
                environment=linux,
            ),
            job(
                "test-macos",
                per_platform(mac, SETUP),
                use("pytest", args="-x"),
                environment=mac,
            ),

            # Lint job - runs ruff on the codebase
            job(
                "lint",
                sh("Install ruff", "python3 -m pip install ruff"),
                sh("Ruff check", "ruff check src tests"),
                environment=linux,
            ),

            # Packaging check - builds the wheel into the staging directory
            job(
                "package",
                use("setup_linux_env"),
                sh("Build wheel", 'python3 -m pip wheel --no-deps -w "$RELAYCI_ARTIFACTS" .'),
                environment=linux,
            ),
        ],
        workflows=[
            workflow(
                "ci",
                "test-linux",
                "test-macos",
                "lint",
                "package",
                requires={"package": ["test-linux"]},
            ),
        ],
    )
