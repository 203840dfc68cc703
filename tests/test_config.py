from pathlib import Path

import pytest

from relayci.config import Settings, load_settings
from relayci.errors import PipelineError


def test_defaults_without_environment():
    settings = load_settings({})
    assert settings == Settings()
    assert settings.run_root == Path(".relayci/runs")
    assert settings.source == "."
    assert not settings.host_only


def test_environment_variables_are_read():
    settings = load_settings({
        "RELAYCI_RUN_ROOT": "/tmp/runs",
        "RELAYCI_WORKERS": "3",
        "RELAYCI_STEP_TIMEOUT": "90",
        "RELAYCI_IMAGES": "cimg/rust:1.65.0, ubuntu-2004:current",
        "RELAYCI_TIERS": "medium,xlarge",
        "RELAYCI_HOST_ONLY": "yes",
        "RELAYCI_SOURCE": "https://github.com/facebook/buck2.git",
        "RELAYCI_REF": "main",
        "RELAYCI_DEBUG": "1",
    })
    assert settings.run_root == Path("/tmp/runs")
    assert settings.workers == 3
    assert settings.step_timeout == 90.0
    assert settings.images == ["cimg/rust:1.65.0", "ubuntu-2004:current"]
    assert settings.tiers == ["medium", "xlarge"]
    assert settings.host_only
    assert settings.source.endswith("buck2.git")
    assert settings.ref == "main"
    assert settings.debug


@pytest.mark.parametrize("name", ["RELAYCI_WORKERS", "RELAYCI_STEP_TIMEOUT"])
def test_bad_numbers_are_rejected(name):
    with pytest.raises(PipelineError):
        load_settings({name: "lots"})


def test_override_ignores_none():
    base = load_settings({"RELAYCI_WORKERS": "2", "RELAYCI_HOST_ONLY": "true"})
    merged = base.override(workers=None, host_only=False, step_timeout=5.0)
    assert merged.workers == 2
    assert merged.host_only is False
    assert merged.step_timeout == 5.0
    assert base.step_timeout is None
