"""Console output formatting utilities for meshci."""

from __future__ import annotations

import sys
import threading
from typing import Mapping, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs run on a thread pool; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, stream=None) -> None:
        with self._lock:
            for line in lines:
                print(line, file=stream or sys.stdout)

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        run_id: str = "",
        ref: str = "",
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Repository: {repository}", f"Workflow: {workflow}"]
        if ref:
            lines.append(f"Ref: {ref}")
        if run_id:
            lines.append(f"Run ID: {run_id}")
        lines.extend([f"Jobs: {job_count}", ""])
        self._emit(*lines)

    def print_release_skip(self, reason: str) -> None:
        self._emit(f"SKIPPING DAG: {reason}")

    def print_superseded(self, run_id: str, by: str) -> None:
        self._emit(f"CANCELLING run {run_id} (superseded by {by})")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_job_status(self, name: str, status: str, reason: str | None = None) -> None:
        if reason:
            self._emit(f"[{name}] STATUS: {status} ({reason})")
        else:
            self._emit(f"[{name}] STATUS: {status}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
        output: str = "",
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
            output: Tail of the command output, shown in debug mode
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
            if output:
                lines.append(output)
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_advisory(self, job: str, step: str, reason: str) -> None:
        """Advisory failures are reported but never change a job's status."""
        first = reason.split("\n")[0] if reason else "Unknown error"
        self._emit(f"[{job}] ADVISORY: step '{step}' failed (ignored): {first}")

    def print_poll(self, what: str, observed: int, expected: int, elapsed: float) -> None:
        self._emit(f"WAITING: {what} {observed}/{expected} after {elapsed:.0f}s")

    def print_results(self, results: Mapping[str, str], gate: Optional[str] = None) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        if gate is not None:
            lines.append("-" * 40)
            lines.append(f"  GATE: {gate.upper()}")
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
        lines = [f"\nERROR: {title}", f"{message}"]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, stream=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", stream=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", stream=sys.stderr)


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
