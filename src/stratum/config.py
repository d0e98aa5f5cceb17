# config.py
from __future__ import annotations

import copy
import tomllib
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple

from pydantic import ValidationError

from .errors import ConfigError


def _deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    for k, v in overlay.items():
        if isinstance(v, Mapping) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = copy.deepcopy(v)
    return base


class ConfigDoc:
    """
    Read-only view over one fully merged configuration document.

    The document is a tree of tables; `value_path("a.b.c")` walks it and
    returns None for anything that is missing.
    """

    def __init__(self, data: Mapping[str, Any] | None = None, *, path: Path | None = None):
        self._data: Dict[str, Any] = copy.deepcopy(dict(data or {}))
        self.path = path

    @property
    def data(self) -> Dict[str, Any]:
        return self._data

    @property
    def base_dir(self) -> Path:
        """Directory relative paths in the document are resolved against."""
        if self.path is not None:
            return self.path.resolve().parent
        return Path.cwd()

    def value_path(self, dotted: str) -> Any:
        cur: Any = self._data
        for part in dotted.split("."):
            if not part:
                return None
            if isinstance(cur, Mapping) and part in cur:
                cur = cur[part]
            else:
                return None
        return cur

    def table(self, name: str) -> Dict[str, Any]:
        v = self.value_path(name)
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            raise ConfigError(f"[{name}] must be a table, got {type(v).__name__}")
        return dict(v)

    def with_overrides(self, overrides: Mapping[str, Any]) -> "ConfigDoc":
        """Return a copy with dotted-path overrides applied (e.g. from --set)."""
        merged = copy.deepcopy(self._data)
        for dotted, value in overrides.items():
            parts = [p for p in dotted.split(".") if p]
            if not parts:
                raise ConfigError(f"invalid override key: {dotted!r}")
            nested: Dict[str, Any] = {parts[-1]: value}
            for p in reversed(parts[:-1]):
                nested = {p: nested}
            _deep_merge(merged, nested)
        return ConfigDoc(merged, path=self.path)


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def load_config(path: str | Path) -> ConfigDoc:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"config file not found: {p}")
    try:
        with p.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML in {p}: {e}") from e
    return ConfigDoc(data, path=p)


def parse_override(raw: str) -> Tuple[str, Any]:
    """
    Parse `key.path=value`. The value is read as a TOML scalar/array when it
    parses as one (`x=2`, `flag=true`, `names=["a","b"]`), otherwise kept as text.
    """
    if "=" not in raw:
        raise ConfigError(f"override must look like key=value, got: {raw!r}")
    key, text = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigError(f"override has an empty key: {raw!r}")
    try:
        value = tomllib.loads(f"v = {text.strip()}")["v"]
    except tomllib.TOMLDecodeError:
        value = text
    return key, value


def parse_overrides(items: Iterable[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for raw in items:
        k, v = parse_override(raw)
        out[k] = v
    return out


def validation_message(section: str, err: ValidationError) -> str:
    """Flatten a pydantic error into one readable line per problem."""
    lines = []
    for e in err.errors():
        loc = ".".join(str(x) for x in e.get("loc", ()))
        where = f"{section}.{loc}" if loc else section
        lines.append(f"{where}: {e.get('msg')}")
    return "; ".join(lines)


def load_section(doc: ConfigDoc, section: str, model: Any, *, error: type[ConfigError] = ConfigError):
    """Validate [section] against a pydantic model, raising ConfigError on bad input."""
    try:
        return model.model_validate(doc.table(section))
    except ValidationError as e:
        raise error(validation_message(section, e)) from e
