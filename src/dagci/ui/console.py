"""Console output formatting utilities for dagci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from dagci.report import RunReport


class Console:
    """Centralized console output. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream / err_stream: override stdout / stderr (tests)
        """
        self.debug = debug
        self._out = stream
        self._err = err_stream
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        target = (self._err or sys.stderr) if err else (self._out or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=target)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        job_count: int,
        context: Mapping[str, str],
    ) -> None:
        """Print run start information."""
        self._print(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Event: {context.get('event', '')}  Branch: {context.get('branch', '')}",
            "",
        )

    def print_flags(self, flags: Mapping[str, bool]) -> None:
        if not flags:
            return
        shown = ", ".join(f"{k}={'true' if v else 'false'}" for k, v in flags.items())
        self._print(f"Changes: {shown}")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the topological stages of the graph."""
        self.print_header("PLAN")
        for i, level in enumerate(levels, start=1):
            self._print(f"  Stage {i}: {', '.join(level)}")

    def print_not_triggered(self, reason: str) -> None:
        self._print(f"\nRUN NOT TRIGGERED ({reason})")

    def print_job_start(self, name: str) -> None:
        self._print(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._print(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._print(f"[{job}] STEP SKIPPED: {name} (condition false)")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._print(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        self._print(f"\nJOB CANCELLED: {name} ({reason})")

    def print_job_success(self, name: str, duration: Optional[float] = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._print(f"[{name}] STATUS: success{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        step: Optional[str] = None,
        log_tail: str = "",
    ) -> None:
        """Print a job failure: first line of the reason, full details in debug."""
        lines = [f"JOB FAILED: {name}"]
        if step:
            lines.append(f"Step: {step}")
        if self.debug:
            lines.append(f"Error details: {reason}")
            if log_tail:
                lines.append(log_tail)
        else:
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._print(*lines)

    def print_cache(self, job: str, message: str) -> None:
        self._print(f"[{job}] CACHE: {message}")

    def print_warning(self, message: str) -> None:
        self._print(f"WARNING: {message}", err=True)

    def print_results(self, report: "RunReport") -> None:
        """Print final results table."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for row in report.jobs:
            lines.append(f"  {row.job}: {row.status.upper()}")
            if row.status == "failure" and row.diagnostic:
                lines.append(f"      {row.diagnostic.splitlines()[0]}")
        lines.append("-" * 40)
        counts = ", ".join(f"{k}={v}" for k, v in report.counts.items() if v)
        lines.append(f"  OVERALL: {report.status.upper()} ({counts or 'no jobs'})")
        self._print(*lines)

    def print_notification(self, level: str, message: str) -> None:
        self._print(f"NOTIFY [{level}]: {message}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message to stderr."""
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            self._print(
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                err=True,
            )
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


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
