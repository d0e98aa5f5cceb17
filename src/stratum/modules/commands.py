# modules/commands.py
from __future__ import annotations

from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import ConfigDoc, validation_message
from ..context import ExecContext
from ..errors import ConfigError
from ..executor import DescribeFn, RunFn
from ..model import Task, task
from .core import INITIALIZED

MODULE = "commands"


class CommandTaskConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    run: Union[str, List[str]]
    after: List[str] = Field(default_factory=list)
    provides: List[str] = Field(default_factory=list)
    module: str = MODULE
    phase: str = "run"
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    label: Optional[str] = None

    @field_validator("run")
    @classmethod
    def _commands(cls, v: Union[str, List[str]]) -> Union[str, List[str]]:
        cmds = [v] if isinstance(v, str) else v
        if not [c for c in cmds if c.strip()]:
            raise ValueError("run must contain at least one command")
        return v

    def commands(self) -> List[str]:
        cmds = [self.run] if isinstance(self.run, str) else self.run
        return [c for c in cmds if c.strip()]


def load_command_tasks(doc: ConfigDoc) -> Dict[str, CommandTaskConfig]:
    out: Dict[str, CommandTaskConfig] = {}
    for task_id, raw in doc.table("tasks").items():
        if not isinstance(raw, dict):
            raise ConfigError(f"[tasks.{task_id}] must be a table")
        try:
            out[task_id] = CommandTaskConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(validation_message(f"tasks.{task_id}", e)) from e
    return out


def _make_body(cfg: CommandTaskConfig) -> Tuple[RunFn, DescribeFn]:
    def run(doc: ConfigDoc, ctx: ExecContext) -> None:
        cwd = ctx.workspace().resolve_config_path(cfg.cwd) if cfg.cwd else ctx.workspace().root
        for cmd in cfg.commands():
            ctx.run_cmd(cmd, cwd=cwd, env=cfg.env)

    def describe(doc: ConfigDoc) -> List[str]:
        return cfg.commands()

    return run, describe


def tasks(doc: ConfigDoc) -> List[Tuple[Task, RunFn, Optional[DescribeFn]]]:
    """One task per enabled `[tasks.<id>]` table, in document order."""
    out = []
    for task_id, cfg in load_command_tasks(doc).items():
        if not cfg.enabled:
            continue
        after = [INITIALIZED] + [a for a in cfg.after if a.strip() != INITIALIZED]
        t = task(
            task_id,
            module=cfg.module,
            phase=cfg.phase,
            provides=cfg.provides,
            after=after,
            label=cfg.label,
        )
        run, describe = _make_body(cfg)
        out.append((t, run, describe))
    return out
