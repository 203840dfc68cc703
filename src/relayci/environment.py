# environment.py
from __future__ import annotations

import os
import posixpath
import shutil
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ExecutionEnvironmentError, ProvisioningError
from .model import EnvironmentSpec, EnvKind, ShellKind
from .ui.console import get_console

# CPUs per resource tier (CircleCI naming). Only capacity, never correctness.
TIER_CPUS = {
    "small": 1,
    "medium": 2,
    "medium+": 3,
    "large": 4,
    "xlarge": 8,
    "2xlarge": 16,
    "2xlarge+": 20,
}

CONTAINER_ROOT = "/relayci"


@dataclass
class Invocation:
    """A process ready for subprocess.Popen."""
    argv: List[str]
    cwd: Optional[str]
    env: Dict[str, str]


@dataclass
class EnvironmentHandle:
    """
    A live, job-private execution environment.

    `root` is the host directory owned by the job; the workspace and the
    artifact staging directory live under it.
    """
    spec: EnvironmentSpec
    root: Path
    shell_program: List[str]
    provider: "EnvironmentProvider"
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    container: Optional[str] = None
    released: bool = False

    @property
    def workspace(self) -> Path:
        return self.root / "workspace"

    @property
    def staging_dir(self) -> Path:
        return self.root / "artifacts"

    def path_in_env(self, host_path: Path) -> str:
        """Translate a host path under `root` into the path steps see."""
        if self.container is None:
            return str(host_path)
        rel = Path(host_path).resolve().relative_to(self.root.resolve())
        return posixpath.join(CONTAINER_ROOT, *rel.parts)

    def resolve_cwd(self, cwd: Optional[str]) -> str:
        return self.provider.resolve_cwd(self, cwd)

    def invocation(self, argv: List[str], cwd: str, env: Mapping[str, str]) -> Invocation:
        return self.provider.invocation(self, argv, cwd, env)


class EnvironmentProvider:
    """acquire() a handle for an EnvironmentSpec, release() it (idempotent)."""

    def acquire(self, spec: EnvironmentSpec, root: Optional[Path] = None) -> EnvironmentHandle:
        raise NotImplementedError

    def release(self, handle: EnvironmentHandle) -> None:
        raise NotImplementedError

    def resolve_cwd(self, handle: EnvironmentHandle, cwd: Optional[str]) -> str:
        raise NotImplementedError

    def invocation(
        self, handle: EnvironmentHandle, argv: List[str], cwd: str, env: Mapping[str, str]
    ) -> Invocation:
        raise NotImplementedError


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _prepare_root(root: Optional[Path]) -> Path:
    if root is None:
        return Path(tempfile.mkdtemp(prefix="relayci-"))
    root = Path(root).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _fresh_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True)


def host_shell(shell: ShellKind) -> List[str]:
    """Shell program prefix for running a body on this host."""
    if shell is ShellKind.WINDOWS:
        exe = shutil.which("pwsh") or shutil.which("powershell")
        if not exe:
            raise ProvisioningError("No Windows shell (pwsh / powershell) available on this host")
        return [exe, "-NoProfile", "-NonInteractive", "-Command"]

    bash = shutil.which("bash")
    if bash:
        return [bash, "-eo", "pipefail", "-c"]
    sh = shutil.which("sh")
    if sh:
        return [sh, "-e", "-c"]
    raise ProvisioningError("No POSIX shell (bash / sh) available on this host")


class _Catalog:
    """Optional allow-lists of images and resource tiers."""

    def __init__(self, images: Optional[Iterable[str]] = None, tiers: Optional[Iterable[str]] = None):
        self.images = set(images) if images else None
        self.tiers = set(tiers) if tiers else None

    def check(self, spec: EnvironmentSpec) -> None:
        if self.images is not None and spec.image_or_os not in self.images:
            raise ProvisioningError(
                f"Image '{spec.image_or_os}' is not available. Available: {sorted(self.images)}"
            )
        if self.tiers is not None and spec.resource_tier not in self.tiers:
            raise ProvisioningError(
                f"Resource tier '{spec.resource_tier}' is not available. Available: {sorted(self.tiers)}"
            )


# ---------------------------------------------------------------------
# Local (host) provider
# ---------------------------------------------------------------------

class LocalProvider(EnvironmentProvider):
    """
    Runs steps as host processes inside a private workspace directory.

    The host stands in for whatever OS image the job asks for; the catalog
    decides which images / tiers are accepted.
    """

    def __init__(self, images: Optional[Iterable[str]] = None, tiers: Optional[Iterable[str]] = None):
        self.catalog = _Catalog(images, tiers)

    def acquire(self, spec: EnvironmentSpec, root: Optional[Path] = None) -> EnvironmentHandle:
        self.catalog.check(spec)
        shell_program = host_shell(spec.shell)
        try:
            root_p = _prepare_root(root)
            handle = EnvironmentHandle(spec=spec, root=root_p, shell_program=shell_program, provider=self)
            _fresh_dir(handle.workspace)
        except OSError as e:
            raise ProvisioningError(f"Could not create workspace: {e}") from e
        get_console().print_debug(f"acquired local environment {handle.id} at {root_p}")
        return handle

    def release(self, handle: EnvironmentHandle) -> None:
        if handle.released:
            return
        handle.released = True
        shutil.rmtree(handle.workspace, ignore_errors=True)
        get_console().print_debug(f"released local environment {handle.id}")

    def resolve_cwd(self, handle: EnvironmentHandle, cwd: Optional[str]) -> str:
        path = (handle.workspace / (cwd or ".")).resolve()
        if not path.is_dir():
            raise ExecutionEnvironmentError(f"working directory not found: {path}")
        return str(path)

    def invocation(
        self, handle: EnvironmentHandle, argv: List[str], cwd: str, env: Mapping[str, str]
    ) -> Invocation:
        full_env = os.environ.copy()
        full_env.update(env)
        return Invocation(argv=list(argv), cwd=cwd, env=full_env)


# ---------------------------------------------------------------------
# Docker provider
# ---------------------------------------------------------------------

class DockerProvider(EnvironmentProvider):
    """
    One long-lived container per job, driven through the docker CLI.

    The job root is bind-mounted at /relayci so the workspace and staging
    directory are visible on both sides.
    """

    def __init__(
        self,
        images: Optional[Iterable[str]] = None,
        tiers: Optional[Iterable[str]] = None,
        docker: str = "docker",
    ):
        self.catalog = _Catalog(images, tiers)
        self.docker = docker

    def _docker(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.docker, *args],
            check=False,
            capture_output=True,
            text=True,
        )

    def acquire(self, spec: EnvironmentSpec, root: Optional[Path] = None) -> EnvironmentHandle:
        self.catalog.check(spec)
        if spec.shell is ShellKind.WINDOWS:
            raise ProvisioningError("Windows shells are not supported in containers")
        if shutil.which(self.docker) is None:
            raise ProvisioningError("Docker is not available. Install Docker and ensure the daemon is running.")

        try:
            root_p = _prepare_root(root)
            handle = EnvironmentHandle(
                spec=spec,
                root=root_p,
                shell_program=["sh", "-e", "-c"],
                provider=self,
            )
            _fresh_dir(handle.workspace)
        except OSError as e:
            raise ProvisioningError(f"Could not create workspace: {e}") from e
        name = f"relayci-{handle.id}"

        cmd = ["run", "-d", "--name", name, "-v", f"{root_p}:{CONTAINER_ROOT}"]
        cpus = TIER_CPUS.get(spec.resource_tier)
        if cpus:
            cmd.extend(["--cpus", str(min(cpus, os.cpu_count() or 1))])
        cmd.extend(["-w", f"{CONTAINER_ROOT}/workspace", spec.image_or_os, "sleep", "infinity"])

        try:
            proc = self._docker(*cmd)
        except OSError as e:
            shutil.rmtree(handle.workspace, ignore_errors=True)
            raise ProvisioningError(f"docker could not be run: {e}") from e
        if proc.returncode != 0:
            shutil.rmtree(handle.workspace, ignore_errors=True)
            raise ProvisioningError(
                f"docker could not start image '{spec.image_or_os}': {proc.stderr.strip()}"
            )
        handle.container = name
        get_console().print_debug(f"started container {name} ({spec.image_or_os})")
        return handle

    def release(self, handle: EnvironmentHandle) -> None:
        if handle.released:
            return
        handle.released = True
        if handle.container:
            self._docker("rm", "-f", handle.container)
        shutil.rmtree(handle.workspace, ignore_errors=True)
        get_console().print_debug(f"removed container {handle.container}")

    def resolve_cwd(self, handle: EnvironmentHandle, cwd: Optional[str]) -> str:
        base = f"{CONTAINER_ROOT}/workspace"
        if not cwd:
            return base
        return posixpath.normpath(posixpath.join(base, cwd))

    def invocation(
        self, handle: EnvironmentHandle, argv: List[str], cwd: str, env: Mapping[str, str]
    ) -> Invocation:
        cmd = [self.docker, "exec", "-w", cwd]
        for key, value in env.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(handle.container or "")
        cmd.extend(argv)
        return Invocation(argv=cmd, cwd=None, env=os.environ.copy())


# ---------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------

class RoutingProvider(EnvironmentProvider):
    """Pick a provider per environment kind; handles remember their owner."""

    def __init__(self, by_kind: Mapping[EnvKind, EnvironmentProvider], default: EnvironmentProvider):
        self.by_kind = dict(by_kind)
        self.default = default

    def acquire(self, spec: EnvironmentSpec, root: Optional[Path] = None) -> EnvironmentHandle:
        return self.by_kind.get(spec.kind, self.default).acquire(spec, root)

    def release(self, handle: EnvironmentHandle) -> None:
        handle.provider.release(handle)

    def resolve_cwd(self, handle: EnvironmentHandle, cwd: Optional[str]) -> str:
        return handle.provider.resolve_cwd(handle, cwd)

    def invocation(
        self, handle: EnvironmentHandle, argv: List[str], cwd: str, env: Mapping[str, str]
    ) -> Invocation:
        return handle.provider.invocation(handle, argv, cwd, env)


def default_provider(
    *,
    host_only: bool = False,
    images: Optional[Iterable[str]] = None,
    tiers: Optional[Iterable[str]] = None,
) -> EnvironmentProvider:
    local = LocalProvider(images=images, tiers=tiers)
    if host_only:
        return local
    return RoutingProvider({EnvKind.CONTAINER: DockerProvider(images=images, tiers=tiers)}, default=local)
