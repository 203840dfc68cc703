from pathlib import Path

import pytest

from relayci.environment import LocalProvider
from relayci.errors import ProvisioningError
from relayci.registry import CommandRegistry
from relayci.runner import JobRunner
from relayci.ui.console import Console, set_console


class SpyProvider(LocalProvider):
    """LocalProvider that records every acquire / release."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.acquired = []
        self.released = []

    def acquire(self, spec, root=None):
        handle = super().acquire(spec, root)
        self.acquired.append(handle)
        return handle

    def release(self, handle):
        self.released.append(handle)
        super().release(handle)


class BrokenProvider(LocalProvider):
    def acquire(self, spec, root=None):
        raise ProvisioningError(f"image '{spec.image_or_os}' is not available")


@pytest.fixture(autouse=True)
def fresh_console():
    set_console(Console())
    yield


@pytest.fixture
def registry():
    return CommandRegistry()


@pytest.fixture
def provider():
    return SpyProvider()


@pytest.fixture
def run_root(tmp_path) -> Path:
    return tmp_path / "runs"


@pytest.fixture
def runner(provider, run_root, registry):
    return JobRunner(provider, run_root=run_root, source=None, registry=registry)


@pytest.fixture
def broken_provider():
    return BrokenProvider()
