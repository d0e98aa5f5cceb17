# modules/core.py
from __future__ import annotations

from typing import List, Optional, Tuple

from ..config import ConfigDoc
from ..context import ExecContext
from ..executor import DescribeFn, RunFn
from ..model import Task, task
from ..workspace import init_dirs, load_paths

MODULE = "core"
INIT_TASK = "core.init"
INITIALIZED = "core:initialized"


def _init(doc: ConfigDoc, ctx: ExecContext) -> None:
    paths = init_dirs(doc)
    ctx.set_workspace(paths)
    ctx.log(f"workspace root: {paths.root}")
    ctx.log(f"build dir: {paths.build_dir}")
    ctx.log(f"out dir: {paths.out_dir}")


def _describe_init(doc: ConfigDoc) -> List[str]:
    paths = load_paths(doc)
    return [f"mkdir -p {paths.build_dir} {paths.out_dir}"]


def tasks(doc: ConfigDoc) -> List[Tuple[Task, RunFn, Optional[DescribeFn]]]:
    """The bootstrap task. Every other module's tasks run after it."""
    return [
        (
            task(INIT_TASK, module=MODULE, phase="init", provides=[INITIALIZED], label="initialize workspace"),
            _init,
            _describe_init,
        )
    ]
