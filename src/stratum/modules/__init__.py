# modules/__init__.py
from __future__ import annotations

from typing import List, Tuple

from ..config import ConfigDoc
from ..executor import TaskRegistry
from ..model import Task
from . import commands, core

# Each module is a function Config -> [(Task, run, describe)], evaluated before planning.
MODULES = (core.tasks, commands.tasks)


def collect_tasks(doc: ConfigDoc) -> Tuple[List[Task], TaskRegistry]:
    tasks: List[Task] = []
    registry = TaskRegistry()
    for contribute in MODULES:
        for t, run, describe in contribute(doc):
            tasks.append(t)
            registry.add(t.id, run, describe)
    return tasks, registry


__all__ = ["collect_tasks", "MODULES"]
