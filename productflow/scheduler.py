"""
Scheduler - turns GraphModels into Runs and drives their task state machines.

The Scheduler provides:
- Run admission per product (queue or reject beyond max_concurrent_runs)
- A RunController per Run, the single logical owner of that Run's task states
- Concurrent dispatch of every READY task on a bounded worker pool
- Retry with backoff, per-attempt timeouts and cancellation
- Immutable Run snapshots for status queries, persisted via a RunStore

Task state machine (per Run):
    PENDING -> READY            every upstream SUCCEEDED
    PENDING -> UPSTREAM_FAILED  an upstream FAILED or UPSTREAM_FAILED
    READY   -> RUNNING          dispatched to the worker pool
    RUNNING -> SUCCEEDED        success Completion
    RUNNING -> READY            failure with attempts left (after backoff)
    RUNNING -> FAILED           failure with no attempts left
    any non-terminal -> SKIPPED run cancelled

Completions arrive asynchronously through future callbacks. Each dispatch
carries its attempt number, so a completion for an attempt that already
timed out or was cancelled is discarded. A timed-out attempt may still be
executing, so its retry is held back until that attempt's dispatch returns.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Optional

from productflow.errors import (
    AdmissionRejected,
    RegistrationError,
    RunNotFoundError,
    TaskTimeoutError,
)
from productflow.handlers import DispatchRegistry, RunContext
from productflow.lineage import LineageRegistrar
from productflow.parser import topological_order
from productflow.registry import GraphRegistry
from productflow.run_store import RunStore, generate_ulid
from productflow.schemas import (
    AdmissionPolicy,
    Asset,
    Completion,
    GraphModel,
    Run,
    RunStatus,
    TaskDescriptor,
    TaskRun,
    TaskState,
)
from productflow.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8

_FAILED_UPSTREAM = (TaskState.FAILED, TaskState.UPSTREAM_FAILED)


@dataclass
class _TaskRecord:
    """Mutable per-task state; only touched under the owning RunController's lock."""
    task_id: str
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    logs_ref: Optional[str] = None
    output_assets: frozenset[Asset] = field(default_factory=frozenset)

    def freeze(self) -> TaskRun:
        return TaskRun(
            task_id=self.task_id,
            state=self.state,
            attempts=self.attempts,
            started_at=self.started_at,
            finished_at=self.finished_at,
            error=self.error,
            logs_ref=self.logs_ref,
            output_assets=self.output_assets,
        )


@dataclass
class _Effects:
    """Work collected under the run lock and performed after releasing it."""
    launches: list[tuple[TaskDescriptor, RunContext]] = field(default_factory=list)
    lineage: list[tuple[str, frozenset[Asset], frozenset[Asset]]] = field(default_factory=list)
    finished: bool = False


class RunController:
    """
    Owner of one Run's mutable state.

    All mutations happen under self._lock; dispatch, lineage publishing and
    scheduler notifications happen after it is released.
    """

    def __init__(
        self,
        scheduler: "Scheduler",
        run_id: str,
        graph: GraphModel,
        reason: str = "manual",
    ):
        self._scheduler = scheduler
        self.run_id = run_id
        self.graph = graph
        self.reason = reason

        self._lock = threading.RLock()
        self._order = tuple(graph.order) or tuple(topological_order(graph.tasks, graph.product_id))
        self._records = {tid: _TaskRecord(tid) for tid in self._order}
        self._status = RunStatus.QUEUED
        self._created_at = utcnow()
        self._started_at: Optional[datetime] = None
        self._finished_at: Optional[datetime] = None

        # task id -> attempt number currently in flight
        self._in_flight: dict[str, int] = {}
        # task ids in READY waiting for their retry backoff to elapse
        self._backing_off: set[str] = set()
        # task id -> timed-out attempt whose dispatch has not returned yet
        self._draining: dict[str, int] = {}
        self.final_persisted = False
        # set by the scheduler once the finished run has been released
        self.released = False
        self._cancel_events: dict[str, threading.Event] = {}
        self._timers: dict[str, threading.Timer] = {}

    @property
    def product_id(self) -> str:
        return self.graph.product_id

    @property
    def finished(self) -> bool:
        return self._finished_at is not None

    @property
    def status(self) -> RunStatus:
        return self._status

    def snapshot(self) -> Run:
        """Return an immutable snapshot of this run."""
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> Run:
        return Run(
            run_id=self.run_id,
            product_id=self.product_id,
            graph_version=self.graph.version,
            task_states={tid: rec.freeze() for tid, rec in self._records.items()},
            status=self._status,
            reason=self.reason,
            created_at=self._created_at,
            started_at=self._started_at,
            finished_at=self._finished_at,
        )

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        """Move QUEUED -> RUNNING and dispatch the root tasks."""
        effects = _Effects()
        with self._lock:
            if self._status != RunStatus.QUEUED or self.finished:
                return
            self._status = RunStatus.RUNNING
            self._started_at = utcnow()
            logger.info(
                f"Run {self.run_id} started ({self.product_id} v{self.graph.version})",
                extra={"event": "run.started",
                       "metadata": {"run_id": self.run_id, "product_id": self.product_id,
                                    "graph_version": self.graph.version}},
            )
            self._scheduler._persist(self._snapshot())
            self._evaluate(effects)
        self._apply_effects(effects)

    def cancel(self) -> bool:
        """
        Skip every non-terminal task and request cancellation of in-flight work.

        Returns:
            False if the run had already finished
        """
        effects = _Effects()
        with self._lock:
            if self.finished:
                return False
            now = utcnow()
            for rec in self._records.values():
                if not rec.state.is_terminal:
                    rec.state = TaskState.SKIPPED
                    rec.finished_at = now
            for event in self._cancel_events.values():
                event.set()
            self._in_flight.clear()
            self._backing_off.clear()
            self._draining.clear()
            self._status = RunStatus.CANCELLED
            self._finish(effects)
        self._apply_effects(effects)
        return True

    # -- readiness evaluation -------------------------------------------------------

    def _evaluate(self, effects: _Effects) -> None:
        """
        Advance PENDING/READY tasks in topological order and detect termination.

        One pass suffices: order guarantees upstream states are final for
        this pass before any of their downstream tasks are visited.
        """
        now = utcnow()
        for tid in self._order:
            rec = self._records[tid]
            task = self.graph.tasks[tid]

            if rec.state == TaskState.PENDING:
                upstream_states = [self._records[u].state for u in task.upstream]
                if any(s in _FAILED_UPSTREAM for s in upstream_states):
                    rec.state = TaskState.UPSTREAM_FAILED
                    rec.finished_at = now
                    logger.info(f"Run {self.run_id}: {tid} upstream failed, not dispatched")
                elif all(s == TaskState.SUCCEEDED for s in upstream_states):
                    rec.state = TaskState.READY

            if rec.state == TaskState.READY and tid not in self._backing_off and tid not in self._draining:
                effects.launches.append((task, self._begin_attempt(task, rec)))

        if all(rec.state.is_terminal for rec in self._records.values()):
            succeeded = all(rec.state == TaskState.SUCCEEDED for rec in self._records.values())
            self._status = RunStatus.SUCCEEDED if succeeded else RunStatus.FAILED
            self._finish(effects)

    def _begin_attempt(self, task: TaskDescriptor, rec: _TaskRecord) -> RunContext:
        rec.state = TaskState.RUNNING
        rec.attempts += 1
        if rec.started_at is None:
            rec.started_at = utcnow()
        cancel_event = threading.Event()
        self._cancel_events[task.id] = cancel_event
        self._in_flight[task.id] = rec.attempts

        deadline = None
        if task.timeout_seconds is not None:
            deadline = time.monotonic() + task.timeout_seconds
            self._start_timer(
                f"{task.id}:timeout", task.timeout_seconds,
                partial(self._on_timeout, task.id, rec.attempts),
            )

        logger.info(
            f"Run {self.run_id}: dispatching {task.id} (attempt {rec.attempts}/{task.max_attempts})",
            extra={"event": "task.dispatched",
                   "metadata": {"run_id": self.run_id, "task_id": task.id,
                                "attempt": rec.attempts, "kind": task.kind.value}},
        )
        return RunContext(
            run_id=self.run_id,
            product_id=self.product_id,
            graph_version=self.graph.version,
            attempt=rec.attempts,
            deadline=deadline,
            cancel_event=cancel_event,
        )

    # -- completion handling -----------------------------------------------------

    def complete(self, task_id: str, attempt: int, completion: Completion) -> bool:
        """
        Apply the Completion of one dispatched attempt.

        Returns:
            False if the completion was stale (superseded attempt,
            cancelled or finished run) and has been discarded
        """
        effects = _Effects()
        with self._lock:
            current = self._is_current(task_id, attempt)
            if current:
                self._apply_completion(task_id, completion, effects)
                self._evaluate(effects)
            else:
                logger.debug(f"Run {self.run_id}: discarding stale completion of {task_id} attempt {attempt}")
                if self._draining.get(task_id) == attempt:
                    # Timed-out attempt has returned; its retry may now be dispatched
                    del self._draining[task_id]
                    if not self.finished:
                        self._evaluate(effects)
        self._apply_effects(effects)
        return current

    def _is_current(self, task_id: str, attempt: int) -> bool:
        return not self.finished and self._in_flight.get(task_id) == attempt

    def _apply_completion(self, task_id: str, completion: Completion, effects: _Effects) -> None:
        task = self.graph.tasks[task_id]
        rec = self._records[task_id]
        del self._in_flight[task_id]
        self._cancel_timer(f"{task_id}:timeout")
        rec.logs_ref = completion.logs_ref

        if completion.succeeded:
            rec.state = TaskState.SUCCEEDED
            rec.finished_at = utcnow()
            rec.error = None
            rec.output_assets = completion.output_assets
            consumed = frozenset().union(*(self._records[u].output_assets for u in task.upstream))
            effects.lineage.append((task_id, rec.output_assets, consumed))
            logger.info(
                f"Run {self.run_id}: {task_id} succeeded",
                extra={"event": "task.succeeded",
                       "metadata": {"run_id": self.run_id, "task_id": task_id,
                                    "outputs": sorted(a.name for a in rec.output_assets)}},
            )
            return

        rec.error = completion.error
        if rec.attempts < task.max_attempts:
            delay = task.retry_backoff.delay_for(rec.attempts)
            rec.state = TaskState.READY
            logger.warning(
                f"Run {self.run_id}: {task_id} attempt {rec.attempts}/{task.max_attempts} failed: "
                f"{completion.error}. Retrying in {delay}s..."
            )
            if delay > 0:
                self._backing_off.add(task_id)
                self._start_timer(
                    f"{task_id}:retry", delay,
                    partial(self._on_retry_due, task_id, rec.attempts),
                )
            return

        rec.state = TaskState.FAILED
        rec.finished_at = utcnow()
        logger.error(
            f"Run {self.run_id}: {task_id} failed after {rec.attempts} attempt(s): {completion.error}",
            extra={"event": "task.failed",
                   "metadata": {"run_id": self.run_id, "task_id": task_id,
                                "attempts": rec.attempts, "transient": completion.transient}},
        )

    def _on_future_done(self, task_id: str, attempt: int, future: Future) -> None:
        try:
            completion = future.result()
        except Exception as e:
            completion = Completion.failure(f"dispatch raised {type(e).__name__}: {e}", transient=True)
        self.complete(task_id, attempt, completion)

    def _on_timeout(self, task_id: str, attempt: int) -> None:
        effects = _Effects()
        with self._lock:
            self._timers.pop(f"{task_id}:timeout", None)
            if not self._is_current(task_id, attempt):
                return
            self._cancel_events[task_id].set()
            self._draining[task_id] = attempt
            error = TaskTimeoutError(task_id, self.graph.tasks[task_id].timeout_seconds)
            self._apply_completion(task_id, Completion.failure(str(error), transient=True), effects)
            self._evaluate(effects)
        self._apply_effects(effects)

    def _on_retry_due(self, task_id: str, attempt: int) -> None:
        effects = _Effects()
        with self._lock:
            self._timers.pop(f"{task_id}:retry", None)
            rec = self._records[task_id]
            if self.finished or task_id not in self._backing_off or rec.attempts != attempt:
                return
            self._backing_off.discard(task_id)
            self._evaluate(effects)
        self._apply_effects(effects)

    # -- timers and teardown -----------------------------------------------------

    def _start_timer(self, key: str, delay: float, callback) -> None:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        self._timers[key] = timer
        timer.start()

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _finish(self, effects: _Effects) -> None:
        self._finished_at = utcnow()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        effects.launches.clear()
        effects.finished = True
        states = {s.value: 0 for s in TaskState}
        for rec in self._records.values():
            states[rec.state.value] += 1
        logger.info(
            f"Run {self.run_id} {self._status.value}",
            extra={"event": f"run.{self._status.value}",
                   "metadata": {"run_id": self.run_id, "product_id": self.product_id,
                                "tasks": {k: v for k, v in states.items() if v}}},
        )
        self.final_persisted = self._scheduler._persist(self._snapshot())

    def _apply_effects(self, effects: _Effects) -> None:
        for task, context in effects.launches:
            self._scheduler._submit(self, task, context)
        for task_id, outputs, consumed in effects.lineage:
            self._scheduler._register_lineage(self, task_id, outputs, consumed)
        if effects.finished:
            self._scheduler._run_finished(self)


class Scheduler:
    """
    Creates and drives Runs for registered products.

    Usage:
        scheduler = Scheduler(registry, DispatchRegistry.create_default(), lineage=registrar)
        run_id = scheduler.trigger_run("weather")
        run = scheduler.wait_for_run(run_id, timeout=60)
        run.status  # RunStatus.SUCCEEDED
    """

    def __init__(
        self,
        registry: GraphRegistry,
        dispatch: DispatchRegistry,
        lineage: Optional[LineageRegistrar] = None,
        run_store: Optional[RunStore] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.registry = registry
        self.dispatch = dispatch
        self.lineage = lineage
        self.run_store = run_store

        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="productflow-task")
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._runs: dict[str, RunController] = {}
        self._active: dict[str, set[str]] = {}
        self._queued: dict[str, deque[str]] = {}
        self._accepting = True

    # -- trigger interface ----------------------------------------------------------

    def trigger_run(self, product_id: str, reason: str = "manual") -> str:
        """
        Create a Run of the product's current GraphModel version.

        Returns:
            run_id of the new run (RUNNING, or QUEUED under the queue policy)

        Raises:
            AdmissionRejected: unknown or retired product, or concurrency
                               limit reached under the reject policy
        """
        snapshot = self.registry.snapshot()
        graph = snapshot.get(product_id)
        if graph is None:
            raise AdmissionRejected(product_id, AdmissionRejected.UNKNOWN_PRODUCT)
        if snapshot.is_retired(product_id):
            raise AdmissionRejected(product_id, AdmissionRejected.RETIRED, "product definition was deleted")

        policy = graph.policy
        with self._lock:
            if not self._accepting:
                raise AdmissionRejected(product_id, AdmissionRejected.SHUTTING_DOWN)
            active = self._active.setdefault(product_id, set())
            queue = self._queued.setdefault(product_id, deque())
            has_slot = len(active) < policy.max_concurrent_runs and not queue
            if not has_slot and policy.admission == AdmissionPolicy.REJECT:
                raise AdmissionRejected(
                    product_id, AdmissionRejected.CONCURRENCY_LIMIT,
                    f"{len(active)} active run(s), limit {policy.max_concurrent_runs}",
                )

            controller = RunController(self, generate_ulid(), graph, reason)
            self._runs[controller.run_id] = controller
            if has_slot:
                active.add(controller.run_id)
            else:
                queue.append(controller.run_id)
                self._persist(controller.snapshot())

        logger.info(
            f"Run {controller.run_id} admitted for {product_id} v{graph.version} ({reason})"
            + ("" if has_slot else ", queued"),
            extra={"event": "run.admitted",
                   "metadata": {"run_id": controller.run_id, "product_id": product_id,
                                "graph_version": graph.version, "reason": reason,
                                "queued": not has_slot}},
        )
        if has_slot:
            controller.start()
        return controller.run_id

    def cancel_run(self, run_id: str) -> bool:
        """
        Cancel a queued or running run.

        Returns:
            False if the run had already finished

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        with self._lock:
            controller = self._runs.get(run_id)
            if controller is None:
                if self.run_store is not None and self.run_store.get_run(run_id) is not None:
                    return False
                raise RunNotFoundError(f"Run not found: {run_id}")
            queue = self._queued.get(controller.product_id)
            if queue is not None and run_id in queue:
                queue.remove(run_id)
        cancelled = controller.cancel()
        if cancelled:
            logger.info(f"Run {run_id} cancelled", extra={"event": "run.cancel_requested"})
        return cancelled

    def get_run_status(self, run_id: str) -> Run:
        """
        Return an immutable snapshot of a run.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        controller = self._runs.get(run_id)
        if controller is not None:
            return controller.snapshot()
        if self.run_store is not None:
            run = self.run_store.get_run(run_id)
            if run is not None:
                return run
        raise RunNotFoundError(f"Run not found: {run_id}")

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Run:
        """
        Block until a run is terminal (or timeout elapses) and return its snapshot.

        Raises:
            RunNotFoundError: If the run id is unknown
        """
        controller = self._runs.get(run_id)
        if controller is None:
            return self.get_run_status(run_id)
        with self._changed:
            self._changed.wait_for(lambda: controller.released, timeout)
        return controller.snapshot()

    def list_runs(self, product_id: Optional[str] = None) -> list[Run]:
        """List live and persisted runs, oldest first."""
        with self._lock:
            controllers = list(self._runs.values())
        runs: dict[str, Run] = {}
        if self.run_store is not None:
            runs.update((r.run_id, r) for r in self.run_store.list_runs(product_id))
        for c in controllers:
            if product_id is None or c.product_id == product_id:
                runs[c.run_id] = c.snapshot()
        return sorted(runs.values(), key=lambda r: (r.created_at, r.run_id))

    def active_runs(self, product_id: str) -> list[str]:
        with self._lock:
            return sorted(self._active.get(product_id, ()))

    def queued_runs(self, product_id: str) -> list[str]:
        with self._lock:
            return list(self._queued.get(product_id, ()))

    def on_graph_registered(self, graph: GraphModel) -> Optional[str]:
        """
        Hook for the SyncAgent: trigger a run if the product runs on change.

        Returns:
            The new run id, or None if no run was created
        """
        if not graph.policy.run_on_change:
            return None
        try:
            return self.trigger_run(graph.product_id, reason="change")
        except AdmissionRejected as e:
            logger.warning(f"Run-on-change for {graph.product_id} v{graph.version} not admitted: {e}")
            return None

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        """
        Stop admitting runs and shut down the worker pool.

        Queued runs can never start afterwards and are cancelled. Running
        runs are either drained (wait=True) or cancelled, so no task is
        ever submitted to a closed pool.

        Args:
            wait: Let running runs finish and wait for in-flight dispatches
            cancel_running: Cancel running runs instead of draining them
        """
        with self._lock:
            self._accepting = False
            queued = [rid for q in self._queued.values() for rid in q]
        for run_id in queued:
            self.cancel_run(run_id)

        if wait and not cancel_running:
            with self._changed:
                if any(self._active.values()):
                    logger.info("Waiting for running runs to finish before shutdown")
                self._changed.wait_for(lambda: not any(self._active.values()))
        else:
            with self._lock:
                running = [rid for ids in self._active.values() for rid in ids]
            for run_id in running:
                self.cancel_run(run_id)
        self._pool.shutdown(wait=wait)
        logger.info("Scheduler shut down")

    # -- callbacks from RunController ----------------------------------------------

    def _submit(self, controller: RunController, task: TaskDescriptor, context: RunContext) -> None:
        try:
            future = self._pool.submit(self.dispatch.dispatch, task, context)
        except RuntimeError as e:
            # Pool already shut down
            controller.complete(task.id, context.attempt, Completion.failure(str(e), transient=True))
            return
        future.add_done_callback(partial(controller._on_future_done, task.id, context.attempt))

    def _register_lineage(
        self,
        controller: RunController,
        task_id: str,
        outputs: frozenset[Asset],
        consumed: frozenset[Asset],
    ) -> None:
        if self.lineage is None:
            return
        try:
            self.lineage.register(
                controller.run_id, task_id, outputs, consumed, product_id=controller.product_id
            )
        except RegistrationError as e:
            # Queued for background retry by the registrar
            logger.warning(f"{e}; task state unaffected")

    def _run_finished(self, controller: RunController) -> None:
        to_start: list[RunController] = []
        if self.lineage is not None:
            self.lineage.forget_run(controller.run_id)
        with self._changed:
            product_id = controller.product_id
            active = self._active.setdefault(product_id, set())
            active.discard(controller.run_id)
            queue = self._queued.setdefault(product_id, deque())
            current = self.registry.current(product_id)
            limit = (current or controller.graph).policy.max_concurrent_runs
            while queue and len(active) < limit:
                next_id = queue.popleft()
                active.add(next_id)
                to_start.append(self._runs[next_id])
            controller.released = True
            if controller.final_persisted:
                # get_run_status and list_runs fall back to the RunStore
                self._runs.pop(controller.run_id, None)
            self._changed.notify_all()

        for queued in to_start:
            queued.start()

    def _persist(self, run: Run) -> bool:
        if self.run_store is None:
            return False
        try:
            self.run_store.save_run(run)
        except OSError as e:
            logger.warning(f"Failed to persist run {run.run_id}: {e}")
            return False
        return True
