# executor.py
from __future__ import annotations

import heapq
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .checkpoints.config import CheckpointPoint, UploadPolicy, UsePolicy
from .checkpoints.store import CheckpointStatus, CheckpointStore
from .config import ConfigDoc
from .context import ExecContext
from .errors import CaptureError, CheckpointRequiredError, RestoreError, StoreError, TaskCancelled
from .planner import Plan

# local dev ---> plan ---> decide checkpoints ---> run ---> capture/upload


class TaskStatus(str, Enum):
    OK = "ok"
    RESTORED = "skipped(restore)"
    WOULD_RUN = "would-run"
    FAILED = "failed"
    NOT_RUN = "not-run"

    @property
    def satisfied(self) -> bool:
        """Dependents may start after a task ends in this status."""
        return self in (TaskStatus.OK, TaskStatus.RESTORED, TaskStatus.WOULD_RUN)


@dataclass
class TaskResult:
    status: TaskStatus
    duration: float | None = None
    error: str | None = None
    reason: str | None = None
    log_tail: List[str] = field(default_factory=list)
    checkpoint: str | None = None


@dataclass
class RunReport:
    results: Dict[str, TaskResult] = field(default_factory=dict)
    dispatch_order: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(r.status.satisfied for r in self.results.values())

    def statuses(self) -> Dict[str, str]:
        return {tid: r.status.value for tid, r in self.results.items()}


# ----------------------------------------------------------------------
# Task bodies
# ----------------------------------------------------------------------

RunFn = Callable[[ConfigDoc, ExecContext], None]
DescribeFn = Callable[[ConfigDoc], List[str]]


@dataclass
class TaskBody:
    run: RunFn
    describe: Optional[DescribeFn] = None


class TaskRegistry:
    """Task id -> body. Tasks with no body (barriers) complete immediately."""

    def __init__(self) -> None:
        self._bodies: Dict[str, TaskBody] = {}

    def add(self, task_id: str, run: RunFn, describe: Optional[DescribeFn] = None) -> None:
        if task_id in self._bodies:
            raise ValueError(f"task body for '{task_id}' registered twice")
        self._bodies[task_id] = TaskBody(run=run, describe=describe)

    def get(self, task_id: str) -> Optional[TaskBody]:
        return self._bodies.get(task_id)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._bodies

    def __len__(self) -> int:
        return len(self._bodies)


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

class Executor:
    """
    Runs a Plan sequentially or with a bounded worker pool.

    Checkpoint decisions for every anchor in the plan are made once,
    single-threaded, before the first task body starts.
    """

    def __init__(
        self,
        plan: Plan,
        ctx: ExecContext,
        registry: TaskRegistry,
        store: CheckpointStore | None = None,
    ):
        self.plan = plan
        self.ctx = ctx
        self.registry = registry
        self.store = store if store is not None and store.enabled else None
        self.console = ctx.console
        self._decisions: Dict[str, CheckpointStatus] = {}
        self._decide_errors: Dict[str, str] = {}
        self._prepared = False

    # ------------------------------------------------------------------
    # Checkpoint decisions
    # ------------------------------------------------------------------

    def prepare(self) -> Dict[str, CheckpointStatus]:
        """Validate checkpoint anchors against the plan and decide restore vs rebuild."""
        if self._prepared:
            return self._decisions
        self._prepared = True
        if self.store is None:
            return self._decisions

        self.store.validate_against_plan(self.plan)
        for point in self.store.points():
            if point.anchor_task not in self.plan:
                continue
            try:
                st = self.store.decide(point, record=not self.ctx.dry_run)
            except StoreError as e:
                self._decide_errors[point.anchor_task] = str(e)
                self.console.print_warning(f"checkpoint {point.id}: {e}; treating as a miss")
                continue
            self._decisions[point.anchor_task] = st
            action = "restore" if st.will_restore else "rebuild"
            self.console.print_checkpoint(point.anchor_task, f"{point.id}: {action} ({st.reason})")
        return self._decisions

    def _point_for(self, task_id: str) -> Optional[CheckpointPoint]:
        if self.store is None:
            return None
        return self.store.point_for_anchor(task_id)

    # ------------------------------------------------------------------
    # One task
    # ------------------------------------------------------------------

    def _run_one(self, task_id: str) -> TaskResult:
        view = self.ctx.for_task(task_id)
        started = time.monotonic()
        result = self._execute(task_id, view)
        result.duration = time.monotonic() - started
        result.log_tail = list(view.log_tail)

        if result.status == TaskStatus.OK:
            self.console.print_task_done(task_id, result.duration)
        elif result.status == TaskStatus.RESTORED:
            self.console.print_task_skipped(task_id, result.reason or "restored")
        elif result.status == TaskStatus.WOULD_RUN:
            self.console.print_dry_run(task_id, view.dry_run_actions)
        elif result.status == TaskStatus.FAILED:
            self.console.print_task_failed(task_id, result.error or "failed", result.duration)
        return result

    def _execute(self, task_id: str, view: ExecContext) -> TaskResult:
        point = self._point_for(task_id)
        decision = self._decisions.get(task_id)
        body = self.registry.get(task_id)

        if not view.dry_run:
            self.console.print_task_start(task_id)

        try:
            if point is not None and decision is None and point.use_policy == UsePolicy.REQUIRED:
                raise CheckpointRequiredError(point.id, self._decide_errors.get(task_id, "no decision"))

            if point is not None and decision is not None and decision.will_restore:
                restored = self._restore(task_id, point, decision, view)
                if restored is not None:
                    return restored
            elif decision is not None and decision.required_unavailable:
                raise CheckpointRequiredError(decision.id, decision.reason)

            if view.dry_run:
                return self._dry_run(task_id, body, point, decision, view)

            if body is not None:
                body.run(view.doc, view)

            result = TaskResult(status=TaskStatus.OK)
            if point is not None and decision is not None and point.use_policy != UsePolicy.OFF:
                result.checkpoint = self._capture(task_id, point, decision)
            return result

        except TaskCancelled as e:
            return TaskResult(status=TaskStatus.FAILED, error=str(e), reason="cancelled")
        except Exception as e:
            return TaskResult(status=TaskStatus.FAILED, error=str(e) or type(e).__name__)

    def _restore(
        self,
        task_id: str,
        point: CheckpointPoint,
        decision: CheckpointStatus,
        view: ExecContext,
    ) -> Optional[TaskResult]:
        """Restore the anchor's outputs. Returns None when the task should be rebuilt instead."""
        label = f"{point.id}@{decision.fingerprint[:12]}"
        if view.dry_run:
            how = "download and restore" if decision.will_download else "restore"
            view.dry_run_actions.append(f"{how} checkpoint {label}")
            return TaskResult(
                status=TaskStatus.RESTORED,
                reason=f"would restore {label} ({decision.reason})",
                checkpoint=f"would restore {label}",
            )

        try:
            self.store.restore(point, decision.fingerprint)
        except (RestoreError, StoreError) as e:
            if point.use_policy == UsePolicy.REQUIRED:
                raise CheckpointRequiredError(point.id, f"restore failed: {e}") from e
            self.console.print_checkpoint(task_id, f"restore of {label} failed, rebuilding: {e}")
            return None

        note = f"restored {label}"
        if (
            point.upload_policy == UploadPolicy.ALWAYS
            and point.backend is not None
            and decision.remote_exists is not True
            and not decision.will_download
        ):
            try:
                uploaded, err = self.store.upload_or_enqueue(point, decision.fingerprint)
            except StoreError as e:
                note += f", upload failed: {e}"
                self.console.print_warning(f"[{task_id}] sync of {label} failed: {e}")
            else:
                note += ", uploaded" if uploaded else f", upload queued ({err})"
        self.console.print_checkpoint(task_id, note)
        return TaskResult(status=TaskStatus.RESTORED, reason=decision.reason, checkpoint=note)

    def _capture(self, task_id: str, point: CheckpointPoint, decision: CheckpointStatus) -> str:
        label = f"{point.id}@{decision.fingerprint[:12]}"
        try:
            captured = self.store.capture(point, decision.fingerprint)
        except (CaptureError, StoreError) as e:
            note = f"capture of {label} failed: {e}"
            self.console.print_warning(f"[{task_id}] {note}")
            return note

        note = f"captured {label}"
        if captured.uploaded:
            note += ", uploaded"
        elif captured.queued:
            note += f", upload queued ({captured.upload_error})"
        self.console.print_checkpoint(task_id, note)
        return note

    def _dry_run(
        self,
        task_id: str,
        body: Optional[TaskBody],
        point: Optional[CheckpointPoint],
        decision: Optional[CheckpointStatus],
        view: ExecContext,
    ) -> TaskResult:
        if body is not None:
            if body.describe is not None:
                view.dry_run_actions.extend(f"run: {cmd}" for cmd in body.describe(view.doc))
            else:
                view.dry_run_actions.append(f"run task {task_id}")
        result = TaskResult(status=TaskStatus.WOULD_RUN)
        if point is not None and decision is not None and point.use_policy != UsePolicy.OFF:
            note = f"capture checkpoint {point.id}@{decision.fingerprint[:12]}"
            if decision.will_upload:
                note += f" and upload to {point.backend}"
            view.dry_run_actions.append(note)
            result.checkpoint = f"would {note}"
        return result

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _blocked_reason(self, task_id: str, results: Dict[str, TaskResult]) -> str:
        if self.ctx.cancelled:
            return "cancelled"
        for dep in self.plan.deps(task_id):
            r = results.get(dep)
            if r is None or r.status == TaskStatus.NOT_RUN:
                return f"dependency {dep} did not run"
            if r.status == TaskStatus.FAILED:
                return f"dependency {dep} failed"
        return "not scheduled"

    def _finish(self, results: Dict[str, TaskResult], dispatch_order: List[str]) -> RunReport:
        report = RunReport(dispatch_order=dispatch_order, cancelled=self.ctx.cancelled)
        for task_id in self.plan.order():
            r = results.get(task_id)
            if r is None:
                r = TaskResult(status=TaskStatus.NOT_RUN, reason=self._blocked_reason(task_id, results))
                results[task_id] = r
            report.results[task_id] = r
        return report

    def run_sequential(self) -> RunReport:
        self.prepare()
        results: Dict[str, TaskResult] = {}
        dispatch_order: List[str] = []

        for task_id in self.plan.order():
            if self.ctx.cancelled:
                break
            if not all(d in results and results[d].status.satisfied for d in self.plan.deps(task_id)):
                continue
            dispatch_order.append(task_id)
            results[task_id] = self._run_one(task_id)

        return self._finish(results, dispatch_order)

    def run_parallel(self, max_parallel: int = 0) -> RunReport:
        """
        Dispatch eligible tasks to a bounded pool. Ties among eligible tasks
        go to the earliest-registered one.
        """
        if self.ctx.dry_run:
            return self.run_sequential()
        if max_parallel <= 0:
            max_parallel = os.cpu_count() or 1

        self.prepare()
        results: Dict[str, TaskResult] = {}
        dispatch_order: List[str] = []

        remaining: Dict[str, int] = {t.id: len(self.plan.deps(t.id)) for t in self.plan.tasks}
        ready: List[tuple[int, str]] = [
            (self.plan.registration_index(tid), tid) for tid, n in remaining.items() if n == 0
        ]
        heapq.heapify(ready)
        in_flight: Dict = {}

        with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix="stratum") as pool:
            while ready or in_flight:
                # schedule while there are free workers
                while ready and len(in_flight) < max_parallel and not self.ctx.cancelled:
                    _, task_id = heapq.heappop(ready)
                    dispatch_order.append(task_id)
                    in_flight[pool.submit(self._run_one, task_id)] = task_id

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self.plan.registration_index(in_flight[f])):
                    task_id = in_flight.pop(fut)
                    result = fut.result()
                    results[task_id] = result

                    # unlock dependents only on success, restore or dry-run
                    if result.status.satisfied:
                        for nxt in self.plan.dependents(task_id):
                            remaining[nxt] -= 1
                            if remaining[nxt] == 0:
                                heapq.heappush(ready, (self.plan.registration_index(nxt), nxt))

        return self._finish(results, dispatch_order)

    def run(self, *, max_parallel: int = 0, sequential: bool = False) -> RunReport:
        if sequential:
            return self.run_sequential()
        return self.run_parallel(max_parallel)


def run_sequential(
    plan: Plan,
    ctx: ExecContext,
    registry: TaskRegistry,
    store: CheckpointStore | None = None,
) -> RunReport:
    return Executor(plan, ctx, registry, store).run_sequential()


def run_parallel(
    plan: Plan,
    ctx: ExecContext,
    registry: TaskRegistry,
    max_parallel: int = 0,
    store: CheckpointStore | None = None,
) -> RunReport:
    return Executor(plan, ctx, registry, store).run_parallel(max_parallel)
