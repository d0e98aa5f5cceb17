"""Console output formatting utilities for stratum."""

from __future__ import annotations

import re
import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from stratum.checkpoints.store import CheckpointInventory, CheckpointStatus, RetryReport
    from stratum.executor import RunReport
    from stratum.planner import Plan

MAX_LOG_CHARS = 4096

_ESCAPE_RE = re.compile(
    r"\x1b(?:"
    r"\[[^@-~]*(?:[@-~]|$)"            # CSI
    r"|\][^\x07\x1b]*(?:\x07|\x1b\\|$)"  # OSC
    r"|[PX^_].*?(?:\x1b\\|$)"          # DCS / SOS / PM / APC
    r"|.?"
    r")",
    re.DOTALL,
)
_DROP_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f-\x9f\u061c\u200e\u200f\u202a-\u202e\u2066-\u2069]")


def sanitize_log_line(line: str) -> str:
    """Strip terminal escape sequences and control characters, capping the length."""
    text = _ESCAPE_RE.sub("", line)
    text = text.replace("\t", " ")
    text = _DROP_RE.sub("", text)
    if len(text) > MAX_LOG_CHARS:
        text = text[:MAX_LOG_CHARS] + " ...[truncated]"
    return text


def _fmt_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.1f}s"


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet_logs: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet_logs: If True, task output lines are not echoed (still kept in results)
        """
        self.debug = debug
        self.quiet_logs = quiet_logs
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out("", title, "-" * len(title))

    # ------------------------------------------------------------------
    # Run events
    # ------------------------------------------------------------------

    def print_run_started(self, config: str, task_count: int, mode: str) -> None:
        """Print run start information."""
        self._out("", "RUN STARTED", f"Config: {config}", f"Tasks: {task_count}", f"Mode: {mode}", "")

    def print_task_start(self, task_id: str) -> None:
        self._out(f"RUN   {task_id}")

    def print_task_log(self, task_id: str, line: str) -> None:
        if not self.quiet_logs:
            self._out(f"[{task_id}] {line}")

    def print_task_done(self, task_id: str, duration: float | None) -> None:
        self._out(f"DONE  {task_id} ({_fmt_duration(duration)})")

    def print_task_failed(self, task_id: str, reason: str, duration: float | None = None) -> None:
        """Print failure message; only the first error line unless debug is on."""
        self._out(f"FAIL  {task_id} ({_fmt_duration(duration)})")
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            first = reason.split("\n")[0] if reason else "Unknown error"
            self._out(f"Error: {first}")

    def print_task_skipped(self, task_id: str, reason: str) -> None:
        self._out(f"SKIP  {task_id} ({reason})")

    def print_dry_run(self, task_id: str, actions: Iterable[str]) -> None:
        lines = [f"DRY-RUN: {task_id}"]
        lines.extend(f"  would {a}" for a in actions)
        self._out(*lines)

    def print_checkpoint(self, task_id: str, message: str) -> None:
        self._out(f"CHECKPOINT [{task_id}] {message}")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for task_id, result in report.results.items():
            status = result.status.value
            status_display = "SUCCESS" if status == "ok" else status.upper()
            extra = f" - {result.reason}" if result.reason else ""
            lines.append(f"  {task_id}: {status_display} ({_fmt_duration(result.duration)}){extra}")
        if report.cancelled:
            lines.append("  (run cancelled)")
        self._out(*lines)

    def print_failure_logs(self, report: "RunReport", max_lines: int = 20) -> None:
        for task_id, result in report.results.items():
            if result.status.value != "failed" or not result.log_tail:
                continue
            tail = list(result.log_tail)[-max_lines:]
            self._out("", f"Last {len(tail)} line(s) from {task_id}:", *(f"  {l}" for l in tail))

    # ------------------------------------------------------------------
    # Plan / checkpoint reports
    # ------------------------------------------------------------------

    def print_plan(self, plan: "Plan") -> None:
        self.print_header(f"PLAN ({len(plan)} tasks)")
        lines = []
        for i, task_id in enumerate(plan.order(), 1):
            t = plan.get(task_id)
            deps = ", ".join(plan.deps(task_id)) or "-"
            lines.append(f"{i:>3}. {task_id} [{t.module}/{t.phase}] after: {deps}")
        self._out(*lines)

    def print_checkpoint_status(self, statuses: Iterable["CheckpointStatus"]) -> None:
        self.print_header("CHECKPOINTS")
        lines = []
        for st in statuses:
            if st.will_restore and st.will_download:
                action = "download+restore"
            elif st.will_restore:
                action = "restore"
            else:
                action = "rebuild"
            remote = "-" if st.remote_exists is None else ("yes" if st.remote_exists else "no")
            lines.append(f"{st.id} (anchor {st.anchor_task})")
            lines.append(f"  fingerprint: {st.fingerprint[:16]}")
            lines.append(f"  local: {'yes' if st.exists else 'no'}  remote: {remote}  action: {action}")
            if st.will_upload:
                lines.append(f"  upload: {st.backend}")
            if st.pending_upload:
                lines.append("  pending upload in queue")
            lines.append(f"  reason: {st.reason}")
        self._out(*lines)

    def print_checkpoint_list(self, inventories: Iterable["CheckpointInventory"]) -> None:
        self.print_header("CHECKPOINT INVENTORY")
        lines = []
        for inv in inventories:
            lines.append(f"{inv.id} (anchor {inv.anchor_task}) current={inv.current_fingerprint[:16]}")
            for fp in inv.local_fingerprints:
                marks = []
                if fp == inv.local_latest:
                    marks.append("latest")
                if fp == inv.current_fingerprint:
                    marks.append("current")
                if fp in inv.remote_fingerprints:
                    marks.append("remote")
                suffix = f" ({', '.join(marks)})" if marks else ""
                lines.append(f"  local  {fp}{suffix}")
            for fp in inv.remote_fingerprints:
                if fp not in inv.local_fingerprints:
                    lines.append(f"  remote {fp}")
            if inv.remote_error:
                lines.append(f"  remote error: {inv.remote_error}")
        self._out(*lines)

    def print_retry_report(self, report: "RetryReport") -> None:
        self._out(
            f"Upload retry: attempted={report.attempted} uploaded={report.uploaded} "
            f"failed={report.failed} skipped={report.skipped}"
        )
        for err in report.errors:
            self._out(f"  {err}")

    # ------------------------------------------------------------------
    # Errors / generic
    # ------------------------------------------------------------------

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
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
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
