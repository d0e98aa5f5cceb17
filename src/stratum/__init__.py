from .model import Task, DependencyRef, task, parse_ref
from .planner import Plan, build_plan
from .config import ConfigDoc, load_config
from .context import ExecContext
from .executor import Executor, TaskRegistry, RunReport, TaskResult, TaskStatus, run_sequential, run_parallel

__version__ = "0.1.0"

__all__ = [
    "Task",
    "DependencyRef",
    "task",
    "parse_ref",
    "Plan",
    "build_plan",
    "ConfigDoc",
    "load_config",
    "ExecContext",
    "Executor",
    "TaskRegistry",
    "RunReport",
    "TaskResult",
    "TaskStatus",
    "run_sequential",
    "run_parallel",
]
