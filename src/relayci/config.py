# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, List, Mapping, Optional

from .errors import PipelineError


def _csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _number(name: str, value: Optional[str], cast=float):
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except ValueError:
        raise PipelineError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings. Read from RELAYCI_* environment variables, then
    overridden by CLI options.
    """
    run_root: Path = Path(".relayci/runs")
    workers: Optional[int] = None
    step_timeout: Optional[float] = None
    images: List[str] = field(default_factory=list)   # empty -> any image
    tiers: List[str] = field(default_factory=list)    # empty -> any tier
    host_only: bool = False
    source: Optional[str] = "."
    ref: Optional[str] = None
    debug: bool = False

    def override(self, **values: Any) -> "Settings":
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings()
    return Settings(
        run_root=Path(env.get("RELAYCI_RUN_ROOT") or defaults.run_root),
        workers=_number("RELAYCI_WORKERS", env.get("RELAYCI_WORKERS"), int),
        step_timeout=_number("RELAYCI_STEP_TIMEOUT", env.get("RELAYCI_STEP_TIMEOUT")),
        images=_csv(env.get("RELAYCI_IMAGES")),
        tiers=_csv(env.get("RELAYCI_TIERS")),
        host_only=_flag(env.get("RELAYCI_HOST_ONLY")),
        source=env.get("RELAYCI_SOURCE") or defaults.source,
        ref=env.get("RELAYCI_REF") or None,
        debug=_flag(env.get("RELAYCI_DEBUG")),
    )
