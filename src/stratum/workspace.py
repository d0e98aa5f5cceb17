# workspace.py
from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .config import ConfigDoc, load_section
from .errors import ConfigError

_ALIAS_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_BUILTIN_ALIASES = ("root", "build", "out")

# Survives `clean = "build"` so checkpoints outlive rebuilds.
KEEP_ON_CLEAN = ("checkpoints",)


class CleanMode(str, Enum):
    NONE = "none"
    BUILD = "build"
    OUT = "out"
    ALL = "all"


class WorkspaceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    root_dir: str = "."
    build_dir: str = "build"
    out_dir: str = "out"
    clean: CleanMode = CleanMode.NONE
    paths: Dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class WorkspacePaths:
    root: Path
    build_dir: Path
    out_dir: Path
    named_dirs: Dict[str, Path] = field(default_factory=dict)

    def resolve_config_path(self, raw: str) -> Path:
        """
        Resolve a user-configured path:
          - `@alias/rest` expands from [workspace.paths] (or root/build/out)
          - absolute paths are used as-is
          - relative paths are rooted at the workspace root
        """
        text = raw.strip()
        if not text:
            raise ConfigError("empty path")
        if text.startswith("@"):
            alias, _, rest = text[1:].partition("/")
            base = self.named_dirs.get(alias)
            if base is None:
                known = ", ".join(sorted(self.named_dirs))
                raise ConfigError(f"unknown path alias '@{alias}' (known: {known})")
            return _join_checked(base, rest) if rest else base
        p = Path(text)
        if p.is_absolute():
            return p
        return _join_checked(self.root, text)


def _join_checked(base: Path, rel: str) -> Path:
    if any(part == ".." for part in Path(rel).parts):
        raise ConfigError(f"path '{rel}' must not contain '..'")
    return base / rel


def _resolve_dir(root: Path, raw: str, what: str) -> Path:
    text = raw.strip()
    if not text:
        raise ConfigError(f"workspace.{what} is empty")
    p = Path(text)
    if any(part == ".." for part in p.parts):
        raise ConfigError(f"workspace.{what} '{text}' must not contain '..'")
    return p if p.is_absolute() else root / p


def load_workspace_config(doc: ConfigDoc) -> WorkspaceConfig:
    return load_section(doc, "workspace", WorkspaceConfig)


def load_paths(doc: ConfigDoc, cfg: WorkspaceConfig | None = None) -> WorkspacePaths:
    """Resolve workspace paths without touching the filesystem."""
    cfg = cfg or load_workspace_config(doc)
    root_raw = Path(cfg.root_dir.strip() or ".")
    root = root_raw if root_raw.is_absolute() else doc.base_dir / root_raw
    root = root.resolve()
    build_dir = _resolve_dir(root, cfg.build_dir, "build_dir")
    out_dir = _resolve_dir(root, cfg.out_dir, "out_dir")

    named: Dict[str, Path] = {"root": root, "build": build_dir, "out": out_dir}
    partial = WorkspacePaths(root=root, build_dir=build_dir, out_dir=out_dir, named_dirs=dict(named))
    for name, raw in cfg.paths.items():
        key = name.strip()
        if not _ALIAS_RE.match(key):
            raise ConfigError(f"workspace.paths key '{name}' is invalid (allowed: a-zA-Z0-9_-)")
        if key in _BUILTIN_ALIASES:
            raise ConfigError(f"workspace.paths key '{key}' is reserved")
        named[key] = partial.resolve_config_path(raw)

    return WorkspacePaths(root=root, build_dir=build_dir, out_dir=out_dir, named_dirs=named)


def _safe_remove(root: Path, target: Path, keep: Tuple[str, ...] = ()) -> None:
    target = target.resolve()
    if target == root or target in root.parents:
        raise ConfigError(f"refusing to clean {target}: it contains the workspace root")
    if not target.exists():
        return
    for child in target.iterdir():
        if child.name in keep:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


def init_dirs(doc: ConfigDoc) -> WorkspacePaths:
    """Resolve paths, apply the configured clean mode and create build/out dirs."""
    cfg = load_workspace_config(doc)
    paths = load_paths(doc, cfg)

    if cfg.clean in (CleanMode.BUILD, CleanMode.ALL):
        _safe_remove(paths.root, paths.build_dir, keep=KEEP_ON_CLEAN)
    if cfg.clean in (CleanMode.OUT, CleanMode.ALL):
        _safe_remove(paths.root, paths.out_dir)

    paths.build_dir.mkdir(parents=True, exist_ok=True)
    paths.out_dir.mkdir(parents=True, exist_ok=True)
    return paths
