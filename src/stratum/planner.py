# planner.py
from __future__ import annotations

import heapq
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from .errors import CyclicDependency, DuplicateTaskId, UnresolvedDependency
from .model import Task, task

# prefix -> (barrier task id, aggregate token)
STAGE_PREFIX = "stage:"
STAGE_DONE = "stage:done"
STAGE_BARRIER_ID = "core.barrier.stage"

DEFAULT_BARRIERS: Dict[str, Tuple[str, str]] = {
    STAGE_PREFIX: (STAGE_BARRIER_ID, STAGE_DONE),
}

_WHITE, _GRAY, _BLACK = 0, 1, 2


class Plan:
    """
    Finalized DAG: tasks in registration order plus resolved edges.

    edges[task_id] lists the task ids that must finish before task_id may start,
    deduplicated and in the order the `after` references resolved them.
    """

    def __init__(self, tasks: Sequence[Task], edges: Mapping[str, Sequence[str]]):
        self._tasks: Tuple[Task, ...] = tuple(tasks)
        self._by_id: Mapping[str, Task] = MappingProxyType({t.id: t for t in self._tasks})
        self._index: Mapping[str, int] = MappingProxyType({t.id: i for i, t in enumerate(self._tasks)})
        self._edges: Mapping[str, Tuple[str, ...]] = MappingProxyType(
            {t.id: tuple(edges.get(t.id, ())) for t in self._tasks}
        )
        dependents: Dict[str, List[str]] = {t.id: [] for t in self._tasks}
        for tid in self._by_id:
            for dep in self._edges[tid]:
                dependents[dep].append(tid)
        self._dependents: Mapping[str, Tuple[str, ...]] = MappingProxyType(
            {k: tuple(sorted(v, key=self._index.__getitem__)) for k, v in dependents.items()}
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def tasks(self) -> Tuple[Task, ...]:
        return self._tasks

    @property
    def edges(self) -> Mapping[str, Tuple[str, ...]]:
        return self._edges

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._by_id

    def get(self, task_id: str) -> Task:
        return self._by_id[task_id]

    def deps(self, task_id: str) -> Tuple[str, ...]:
        return self._edges[task_id]

    def dependents(self, task_id: str) -> Tuple[str, ...]:
        return self._dependents[task_id]

    def registration_index(self, task_id: str) -> int:
        return self._index[task_id]

    def order(self) -> List[str]:
        """
        Topological order. Among ready tasks the earliest registered wins,
        so the result is stable across runs.
        """
        indeg = {tid: len(deps) for tid, deps in self._edges.items()}
        ready = [self._index[tid] for tid, d in indeg.items() if d == 0]
        heapq.heapify(ready)

        out: List[str] = []
        while ready:
            tid = self._tasks[heapq.heappop(ready)].id
            out.append(tid)
            for nxt in self._dependents[tid]:
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    heapq.heappush(ready, self._index[nxt])
        return out

    def to_dot(self) -> str:
        """Render the plan as a Graphviz digraph (edges point dependency -> dependent)."""
        lines = ["digraph plan {", "  rankdir=LR;"]
        for t in self._tasks:
            label = f"{t.id}\\n{t.module}/{t.phase}"
            shape = "diamond" if t.phase == "barrier" else "box"
            lines.append(f'  "{t.id}" [label="{label}", shape={shape}];')
        for t in self._tasks:
            for dep in self._edges[t.id]:
                lines.append(f'  "{dep}" -> "{t.id}";')
        lines.append("}")
        return "\n".join(lines) + "\n"


# ----------------------------------------------------------------------
# Build
# ----------------------------------------------------------------------

def _barrier_tasks(tasks: Sequence[Task], barriers: Mapping[str, Tuple[str, str]]) -> List[Task]:
    out: List[Task] = []
    for prefix, (barrier_id, aggregate) in barriers.items():
        producers = [
            t.id
            for t in tasks
            if any(tok.startswith(prefix) and tok != aggregate for tok in t.provides)
        ]
        out.append(
            task(
                barrier_id,
                module="core",
                phase="barrier",
                provides=[aggregate],
                after=producers,
                label=f"barrier ({prefix}*)",
            )
        )
    return out


def _find_cycle(order: Sequence[str], edges: Mapping[str, Sequence[str]]) -> List[str] | None:
    color = {tid: _WHITE for tid in order}
    stack: List[str] = []

    def visit(tid: str) -> List[str] | None:
        color[tid] = _GRAY
        stack.append(tid)
        for dep in edges[tid]:
            if color[dep] == _GRAY:
                start = stack.index(dep)
                return stack[start:] + [dep]
            if color[dep] == _WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[tid] = _BLACK
        return None

    for tid in order:
        if color[tid] == _WHITE:
            found = visit(tid)
            if found:
                return found
    return None


def build_plan(
    tasks: Iterable[Task],
    *,
    barriers: Mapping[str, Tuple[str, str]] = DEFAULT_BARRIERS,
) -> Plan:
    """
    Turn a task set into a finalized Plan.

    Raises:
      DuplicateTaskId: two tasks share an id
      UnresolvedDependency: a required reference matches nothing
      CyclicDependency: the resolved edges contain a cycle
    """
    registered = list(tasks)

    seen: set[str] = set()
    for t in registered:
        if t.id in seen:
            raise DuplicateTaskId(t.id)
        seen.add(t.id)

    # Barriers are injected before resolution so `stage:done` resolves like any token.
    for b in _barrier_tasks(registered, barriers):
        if b.id in seen:
            raise DuplicateTaskId(b.id)
        seen.add(b.id)
        registered.append(b)

    by_token: Dict[str, List[str]] = {}
    for t in registered:
        for tok in t.provides:
            by_token.setdefault(tok, []).append(t.id)

    edges: Dict[str, List[str]] = {}
    for t in registered:
        deps: List[str] = []
        for ref in t.after:
            if ref.target in seen:
                matches = [ref.target]
            else:
                matches = [p for p in by_token.get(ref.target, []) if p != t.id]

            if not matches:
                if ref.optional:
                    continue
                raise UnresolvedDependency(t.id, ref.target)

            for m in matches:
                if m not in deps:
                    deps.append(m)
        edges[t.id] = deps

    cycle = _find_cycle([t.id for t in registered], edges)
    if cycle:
        raise CyclicDependency(cycle)

    return Plan(registered, edges)
