# errors.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List


# ----------------------------------------------------------------------
# Plan errors (fatal, raised before any task runs)
# ----------------------------------------------------------------------

class PlanError(Exception):
    """Raised when the task set cannot be turned into a valid plan."""


class DuplicateTaskId(PlanError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"duplicate task id: {task_id}")


class UnresolvedDependency(PlanError):
    def __init__(self, task_id: str, reference: str):
        self.task_id = task_id
        self.reference = reference
        super().__init__(
            f"task '{task_id}' depends on '{reference}', which matches no task id or provided token"
        )


class CyclicDependency(PlanError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("dependency cycle: " + " -> ".join(self.cycle))


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------

class ConfigError(Exception):
    """Raised when the configuration document is unreadable or invalid."""


class CheckpointConfigError(ConfigError):
    """Raised when checkpoint points or backends are misconfigured."""


# ----------------------------------------------------------------------
# Task execution
# ----------------------------------------------------------------------

@dataclass
class CommandError(Exception):
    """An external command exited non-zero or was killed by a signal."""
    cmd: str
    exit_code: int | None
    signal: int | None = None
    task_id: str | None = None

    def __str__(self) -> str:
        where = f"[{self.task_id}] " if self.task_id else ""
        if self.signal is not None:
            return f"{where}command killed by signal {self.signal}: {self.cmd}"
        return f"{where}command failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class TaskCancelled(Exception):
    task_id: str

    def __str__(self) -> str:
        return f"task '{self.task_id}' cancelled"


@dataclass
class CheckpointRequiredError(Exception):
    """A point with use_policy=required could not restore its checkpoint."""
    point_id: str
    reason: str

    def __str__(self) -> str:
        return f"checkpoint '{self.point_id}' is required but cannot be restored ({self.reason})"


# ----------------------------------------------------------------------
# Checkpoints
# ----------------------------------------------------------------------

class CheckpointError(Exception):
    """Base class for checkpoint store failures."""


class StoreError(CheckpointError):
    """Lock contention or unreadable store files after retries."""


class RestoreError(CheckpointError):
    pass


class CaptureError(CheckpointError):
    pass


class BackendError(CheckpointError):
    """
    A remote backend call failed.

    `transient` separates failures worth retrying later (timeouts, 5xx,
    dropped connections) from ones that will keep failing (auth, bad config).
    """

    def __init__(self, message: str, *, transient: bool = True):
        self.transient = transient
        super().__init__(message)
