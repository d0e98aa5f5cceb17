# context.py
from __future__ import annotations

import copy
import os
import shlex
import signal
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Mapping, Optional, Sequence, Set

from .config import ConfigDoc
from .errors import CommandError, TaskCancelled
from .ui.console import Console, get_console, sanitize_log_line
from .workspace import WorkspacePaths, load_paths

LOG_TAIL_LINES = 200


class _SharedState:
    """State shared by every task-scoped view of one run's context."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.cancel_event = threading.Event()
        self.workspace: Optional[WorkspacePaths] = None
        self.process_groups: Set[int] = set()


class ExecContext:
    """
    Run-scoped execution state shared by reference across all task bodies.

    The bootstrap task publishes workspace paths once via set_workspace();
    everything else only reads. Each running task gets a view from
    for_task() so its log lines are attributed and kept.
    """

    def __init__(self, doc: ConfigDoc, *, dry_run: bool = False, console: Console | None = None):
        self.doc = doc
        self.dry_run = dry_run
        self.console = console or get_console()
        self.task_id: str | None = None
        self.log_tail: Deque[str] = deque(maxlen=LOG_TAIL_LINES)
        self.dry_run_actions: list[str] = []
        self._shared = _SharedState()

    def for_task(self, task_id: str) -> "ExecContext":
        view = copy.copy(self)
        view.task_id = task_id
        view.log_tail = deque(maxlen=LOG_TAIL_LINES)
        view.dry_run_actions = []
        return view

    # ------------------------------------------------------------------
    # Workspace
    # ------------------------------------------------------------------

    def set_workspace(self, paths: WorkspacePaths) -> None:
        with self._shared.lock:
            self._shared.workspace = paths

    def workspace(self) -> WorkspacePaths:
        """Workspace paths published by core.init, resolved lazily if it has not run."""
        with self._shared.lock:
            if self._shared.workspace is None:
                self._shared.workspace = load_paths(self.doc)
            return self._shared.workspace

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._shared.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop dispatching and send SIGTERM to every owned process group."""
        self._shared.cancel_event.set()
        self._signal_groups(signal.SIGTERM)

    def kill(self) -> None:
        self._shared.cancel_event.set()
        self._signal_groups(signal.SIGKILL)

    def _signal_groups(self, sig: int) -> None:
        with self._shared.lock:
            groups = list(self._shared.process_groups)
        for pgid in groups:
            try:
                os.killpg(pgid, sig)
            except ProcessLookupError:
                pass

    # ------------------------------------------------------------------
    # Logging / commands
    # ------------------------------------------------------------------

    def log(self, line: str) -> None:
        clean = sanitize_log_line(line)
        self.log_tail.append(clean)
        self.console.print_task_log(self.task_id or "-", clean)

    def run_cmd(
        self,
        cmd: str | Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """
        Run an external command in its own process group, streaming output.

        A string runs through the shell, a sequence runs directly.
        Raises CommandError on non-zero exit and TaskCancelled when the run
        was cancelled while the command was running.
        """
        display = cmd if isinstance(cmd, str) else shlex.join(cmd)
        if self.dry_run:
            self.dry_run_actions.append(f"run: {display}")
            self.log(f"DRY-RUN: {display}")
            return
        if self.cancelled:
            raise TaskCancelled(self.task_id or display)

        full_env: Dict[str, str] = os.environ.copy()
        full_env.update(env or {})

        proc = subprocess.Popen(
            cmd,
            shell=isinstance(cmd, str),
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=True,
        )
        pgid = proc.pid
        with self._shared.lock:
            self._shared.process_groups.add(pgid)
        try:
            if self.cancelled:
                # cancel() ran before the group was registered
                try:
                    os.killpg(pgid, signal.SIGTERM)
                except ProcessLookupError:
                    pass
            assert proc.stdout is not None
            for line in proc.stdout:
                self.log(line.rstrip("\n"))
            rc = proc.wait()
        finally:
            if proc.poll() is None:
                try:
                    os.killpg(pgid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                proc.wait()
            with self._shared.lock:
                self._shared.process_groups.discard(pgid)

        if rc == 0:
            return
        if self.cancelled:
            raise TaskCancelled(self.task_id or display)
        if rc < 0:
            raise CommandError(cmd=display, exit_code=None, signal=-rc, task_id=self.task_id)
        raise CommandError(cmd=display, exit_code=rc, task_id=self.task_id)
