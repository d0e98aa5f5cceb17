# model.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

OPTIONAL_SUFFIX = "?"


@dataclass(frozen=True)
class DependencyRef:
    """A reference to a task id or a provided token, possibly optional."""
    target: str
    optional: bool = False

    def __str__(self) -> str:
        return f"{self.target}{OPTIONAL_SUFFIX}" if self.optional else self.target


def parse_ref(raw: str) -> DependencyRef:
    """
    Parse one `after` entry.

    "core:initialized"  -> required reference
    "stage:done?"       -> optional reference (dropped when nothing matches)
    """
    text = raw.strip()
    if text.endswith(OPTIONAL_SUFFIX):
        target = text[: -len(OPTIONAL_SUFFIX)].strip()
        optional = True
    else:
        target = text
        optional = False
    if not target:
        raise ValueError(f"empty dependency reference: {raw!r}")
    return DependencyRef(target=target, optional=optional)


@dataclass(frozen=True)
class Task:
    """
    A unit of work contributed by a module.

    Canonical dependency field: `after` (task ids or tokens, `?` suffix = optional).
    Tasks are immutable once created; the planner and executor never mutate them.
    """
    id: str
    module: str
    phase: str
    provides: Tuple[str, ...] = ()
    after: Tuple[DependencyRef, ...] = ()
    label: str | None = None

    @property
    def display_name(self) -> str:
        return self.label or self.id


def task(
    id: str,
    *,
    module: str,
    phase: str,
    provides: Optional[Iterable[str]] = None,
    after: Optional[Iterable[str | DependencyRef]] = None,
    label: str | None = None,
) -> Task:
    """Create a Task from plain strings: task("a", module="m", phase="p", after=["b?"])."""
    refs = []
    for raw in after or []:
        refs.append(raw if isinstance(raw, DependencyRef) else parse_ref(raw))

    provided = []
    for tok in provides or []:
        tok = tok.strip()
        if tok and tok not in provided:
            provided.append(tok)

    return Task(
        id=id,
        module=module,
        phase=phase,
        provides=tuple(provided),
        after=tuple(refs),
        label=label,
    )
