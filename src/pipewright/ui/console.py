"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..model import Run
    from ..publish import DeploymentRecord
    from ..quality import Report
    from ..triggers import TriggerDecision


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs run in parallel; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        run_id: str | None = None,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED"]
        if run_id:
            lines.append(f"Run: {run_id}")
        lines += [f"Repository: {repository}", f"Workflow: {workflow}", f"Jobs: {job_count}", ""]
        self._emit(*lines)

    def print_trigger_decision(self, decision: "TriggerDecision") -> None:
        verdict = "accepted" if decision.accepted else "rejected"
        self._emit(f"TRIGGER: {verdict} ({decision.reason})")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stages a workflow will execute in."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._emit(f"  Stage {idx}: {', '.join(level)}")

    def print_job_start(self, name: str, runs_on: str | None = None) -> None:
        """Print job start message."""
        suffix = f" (runs-on: {runs_on})" if runs_on else ""
        self._emit(f"\nJOB STARTED: {name}{suffix}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._emit(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_step_log(self, job: str, lines: List[str]) -> None:
        """Print captured step output (debug mode only)."""
        if self.debug and lines:
            self._emit(*(f"[{job}]   {line}" for line in lines))

    def print_best_effort(self, job: str, name: str, reason: str) -> None:
        self._emit(f"[{job}] STEP FAILED (continuing): {name}", f"[{job}]   {reason}")

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
        output: Optional[List[str]] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
            output: Tail of the step's captured output
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
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if output:
            lines.extend(f"  | {line}" for line in output[-20:])
        self._emit(*lines)

    def print_cache_hit(self, job: str, reason: str) -> None:
        """Print cache hit message."""
        self._emit(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str) -> None:
        """Print cache miss message."""
        self._emit(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        short_key = key[:48] + "..." if len(key) > 48 else key
        self._emit(f"[{job}] CACHE: saved ({short_key})")

    def print_deployment(self, job: str, record: "DeploymentRecord") -> None:
        state = "unchanged" if record.reused else "published"
        self._emit(f"[{job}] DEPLOY: {record.environment} {state} -> {record.url}")

    def print_quality_report(self, change_request: int | None, report: "Report") -> None:
        lines = [f"\nQUALITY GATE: {report.status.upper()} (change request #{change_request})"]
        if report.error:
            lines.append(f"  {report.error}")
        for f in report.new_findings:
            where = f"{f.path}:{f.line}" if f.line else f.path
            lines.append(f"  [{f.severity}] {where} {f.rule}: {f.message}")
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"\nJOB SKIPPED: {name}", f"STATUS: skipped ({reason})")

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._emit(f"JOB FINISHED: {name} ({status}{took})")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._emit(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._emit(f"  {name} (skipped: {reason})")

    def print_results(self, run: "Run") -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, f"RESULTS ({run.status.value.upper()})", "=" * 40]
        for job, result in run.jobs.items():
            line = f"  {job}: {result.status.value.upper()}"
            if result.failed_step:
                line += f" (step: {result.failed_step})"
            elif result.reason:
                line += f" ({result.reason})"
            lines.append(line)
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
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

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
