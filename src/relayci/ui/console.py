"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from relayci.model import WorkflowResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, output_tail: int = 40):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            output_tail: Number of output lines shown for a failed step
        """
        self.debug = debug
        self.output_tail = output_tail
        # jobs run on worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            "",
        )

    def print_layer(self, index: int, jobs: list[str]) -> None:
        self._emit(f"=== Layer {index}: {', '.join(jobs)} ===")

    def print_job_start(self, name: str, environment: str) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: {name} on {environment}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] ▶ {name}")

    def print_step_output(self, output: str) -> None:
        """Print the tail of a failed step's output."""
        if not output:
            return
        lines = output.rstrip("\n").splitlines()
        if not self.debug:
            lines = lines[-self.output_tail:]
        self._emit(*(f"    {line}" for line in lines))

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._emit(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"\nJOB SKIPPED: {name} ({reason})")

    def print_plan_job(self, name: str, detail: str) -> None:
        """Print one job of an execution plan."""
        self._emit(f"  {name} ({detail})")

    def print_plan_step(self, name: str) -> None:
        self._emit(f"      - {name}")

    def print_results(self, result: "WorkflowResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, f"RESULTS ({result.name})", "=" * 40]
        for name, job in result.jobs.items():
            line = f"  {name}: {job.outcome.value.upper()}"
            if job.failing_step is not None:
                line += f" at step {job.failing_index} '{job.failing_step}'"
            if job.exit_code is not None:
                line += f" (exit={job.exit_code})"
            line += f" [{job.duration:.1f}s]"
            lines.append(line)
        lines.append(f"OVERALL: {result.overall.value.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
