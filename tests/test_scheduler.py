"""Tests for the Scheduler and RunController state machine.

Tests cover:
- End-to-end weather run with lineage
- Retry, timeout and upstream failure handling
- Admission policies (queue FIFO, reject) and cancellation
- Run persistence through the RunStore
"""

import threading
import time

import pytest

from productflow.errors import AdmissionRejected, RunNotFoundError
from productflow.parser import parse
from productflow.scheduler import Scheduler
from productflow.schemas import LineageEdge, RunStatus, TaskState


WAIT = 5.0

SLOW_DEFINITION = """\
product_id: slow
policy: {{admission: {admission}, max_concurrent_runs: 1}}
tasks:
  - {{id: wait, kind: inline, config: {{callable: block}}}}
"""


class Gate:
    """Inline callable that blocks until opened or the attempt is cancelled."""

    def __init__(self):
        self.opened = threading.Event()
        self.entered = threading.Event()

    def block(self, task, context):
        self.entered.set()
        while not self.opened.is_set() and not context.cancelled:
            time.sleep(0.01)


@pytest.fixture
def gate(inline):
    g = Gate()
    inline.register_callable("block", g.block)
    yield g
    g.opened.set()


def _register(registry, definition: str):
    return registry.register(parse(definition.encode()))


def _assert_finished_consistently(run):
    terminal = all(tr.state.is_terminal for tr in run.task_states.values())
    assert (run.finished_at is not None) == terminal
    assert run.status.is_terminal == terminal


class TestWeatherRun:
    """The three-task weather product end to end."""

    def test_all_tasks_succeed(self, scheduler, graph_registry, weather_definition, recorder):
        graph_registry.register(parse(weather_definition))

        run = scheduler.wait_for_run(scheduler.trigger_run("weather"), timeout=WAIT)

        assert run.status == RunStatus.SUCCEEDED
        assert {tid: tr.state for tid, tr in run.task_states.items()} == {
            "download": TaskState.SUCCEEDED,
            "schema": TaskState.SUCCEEDED,
            "register": TaskState.SUCCEEDED,
        }
        assert run.graph_version == 1
        assert [c[1] for c in recorder.calls] == ["download", "schema", "register"]
        _assert_finished_consistently(run)

    def test_output_assets_recorded(self, scheduler, graph_registry, weather_definition):
        graph_registry.register(parse(weather_definition))

        run = scheduler.wait_for_run(scheduler.trigger_run("weather"), timeout=WAIT)

        register = run.task_states["register"]
        assert [a.name for a in register.output_assets] == ["table"]
        assert next(iter(register.output_assets)).schema_hint == "station STRING, temp FLOAT"
        assert register.logs_ref == "inline:register"

    def test_lineage_edges(self, scheduler, graph_registry, weather_definition, lineage_store):
        graph_registry.register(parse(weather_definition))

        scheduler.wait_for_run(scheduler.trigger_run("weather"), timeout=WAIT)
        scheduler.wait_for_run(scheduler.trigger_run("weather"), timeout=WAIT)

        assert set(lineage_store.edges()) == {
            LineageEdge("task:weather/download", "asset:raw", "raw"),
            LineageEdge("asset:raw", "task:weather/schema", "raw"),
            LineageEdge("task:weather/register", "asset:table", "table"),
        }

    def test_finished_run_is_released(self, scheduler, graph_registry, weather_definition, registrar, lineage_store):
        graph_registry.register(parse(weather_definition))

        run_id = scheduler.trigger_run("weather")
        scheduler.wait_for_run(run_id, timeout=WAIT)

        assert run_id not in scheduler._runs
        assert registrar._registered == {}
        assert len(lineage_store.edges()) == 3
        assert scheduler.get_run_status(run_id).status == RunStatus.SUCCEEDED
        assert [r.run_id for r in scheduler.list_runs("weather")] == [run_id]

    def test_lineage_failure_does_not_fail_task(self, graph_registry, dispatch, weather_definition):
        from productflow.lineage import LineageRegistrar

        class BrokenStore:
            def upsert_lineage_edge(self, producer, consumer, asset):
                raise ConnectionError("metadata store down")

        registrar = LineageRegistrar(BrokenStore(), retry_interval_seconds=60, max_attempts=3)
        sched = Scheduler(graph_registry, dispatch, lineage=registrar)
        try:
            graph_registry.register(parse(weather_definition))
            run = sched.wait_for_run(sched.trigger_run("weather"), timeout=WAIT)
        finally:
            sched.shutdown()

        assert run.status == RunStatus.SUCCEEDED
        assert {p.task_id for p in registrar.pending()} == {"download", "schema", "register"}


class TestFailureHandling:
    """Retries, upstream failures and timeouts."""

    def test_retry_then_success(self, scheduler, graph_registry, inline):
        def flaky(task, context):
            if context.attempt == 1:
                raise RuntimeError("transient blip")

        inline.register_callable("flaky", flaky)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, kind: inline, config: {callable: flaky}, max_attempts: 2}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.SUCCEEDED
        assert run.task_states["a"].attempts == 2
        assert run.task_states["a"].error is None

    def test_retry_waits_for_backoff(self, scheduler, graph_registry, inline):
        attempt_times = []

        def flaky(task, context):
            attempt_times.append(time.monotonic())
            if context.attempt == 1:
                raise RuntimeError("try again")

        inline.register_callable("flaky", flaky)
        _register(graph_registry, """\
product_id: p
tasks:
  - id: a
    config: {callable: flaky}
    max_attempts: 2
    retry_backoff: {strategy: fixed, base_seconds: 0.2}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.SUCCEEDED
        assert attempt_times[1] - attempt_times[0] >= 0.2

    def test_attempts_exhausted(self, scheduler, graph_registry, inline):
        inline.register_callable("boom", lambda task, context: 1 / 0)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: boom}, max_attempts: 3}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.FAILED
        assert run.task_states["a"].state == TaskState.FAILED
        assert run.task_states["a"].attempts == 3
        assert "division by zero" in run.task_states["a"].error

    def test_upstream_failure_propagates(self, scheduler, graph_registry, inline, recorder):
        def boom(task, context):
            raise RuntimeError("download failed")

        inline.register_callable("boom", boom)
        inline.register_callable("record", recorder.record)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: boom}}
  - {id: b, config: {callable: record}, upstream: [a]}
  - {id: c, config: {callable: record}, upstream: [b]}
  - {id: d, config: {callable: record}}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.FAILED
        assert run.state_of("a") == TaskState.FAILED
        assert run.state_of("b") == TaskState.UPSTREAM_FAILED
        assert run.state_of("c") == TaskState.UPSTREAM_FAILED
        assert run.state_of("d") == TaskState.SUCCEEDED
        assert recorder.count("b") == 0
        assert recorder.count("c") == 0
        _assert_finished_consistently(run)

    def test_timeout_fails_attempt(self, scheduler, graph_registry, gate):
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: block}, timeout_seconds: 0.2}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.FAILED
        assert run.task_states["a"].attempts == 1
        assert "exceeded timeout" in run.task_states["a"].error

    def test_timeout_is_retried(self, scheduler, graph_registry, inline):
        def slow_first(task, context):
            if context.attempt == 1:
                context.cancel_event.wait(WAIT)

        inline.register_callable("slow_first", slow_first)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: slow_first}, timeout_seconds: 0.2, max_attempts: 2}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.SUCCEEDED
        assert run.task_states["a"].attempts == 2

    def test_timed_out_attempt_never_overlaps_its_retry(self, scheduler, graph_registry, inline):
        lock = threading.Lock()
        active = []
        overlaps = []

        def stubborn(task, context):
            # ignores cancel_event
            with lock:
                active.append(context.attempt)
                overlaps.append(len(active))
            time.sleep(0.3)
            with lock:
                active.remove(context.attempt)

        inline.register_callable("stubborn", stubborn)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: stubborn}, timeout_seconds: 0.1, max_attempts: 3}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("p"), timeout=WAIT)

        assert run.status == RunStatus.FAILED
        assert run.task_states["a"].attempts == 3
        assert "exceeded timeout" in run.task_states["a"].error
        assert overlaps == [1, 1, 1]

    def test_missing_executor_fails_task(self, graph_registry, inline):
        from productflow.handlers import DispatchRegistry

        dispatch = DispatchRegistry(max_dispatch_attempts=1, dispatch_backoff_seconds=0)
        dispatch.register("inline", inline)
        sched = Scheduler(graph_registry, dispatch)
        try:
            _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, kind: container_cluster, config: {image: "busybox"}}
""")
            run = sched.wait_for_run(sched.trigger_run("p"), timeout=WAIT)
        finally:
            sched.shutdown()

        assert run.status == RunStatus.FAILED
        assert "No executor registered" in run.task_states["a"].error


class TestAdmission:
    """Queue and reject policies."""

    def test_unknown_product(self, scheduler):
        with pytest.raises(AdmissionRejected) as exc_info:
            scheduler.trigger_run("ghost")
        assert exc_info.value.reason == AdmissionRejected.UNKNOWN_PRODUCT

    def test_retired_product(self, scheduler, graph_registry, weather_definition):
        graph_registry.register(parse(weather_definition))
        graph_registry.retire("weather")

        with pytest.raises(AdmissionRejected) as exc_info:
            scheduler.trigger_run("weather")
        assert exc_info.value.reason == AdmissionRejected.RETIRED

    def test_reject_policy(self, scheduler, graph_registry, gate):
        _register(graph_registry, SLOW_DEFINITION.format(admission="reject"))
        first = scheduler.trigger_run("slow")
        assert gate.entered.wait(WAIT)

        with pytest.raises(AdmissionRejected) as exc_info:
            scheduler.trigger_run("slow")
        assert exc_info.value.reason == AdmissionRejected.CONCURRENCY_LIMIT

        gate.opened.set()
        run = scheduler.wait_for_run(first, timeout=WAIT)
        assert run.status == RunStatus.SUCCEEDED
        assert len(scheduler.list_runs("slow")) == 1

    def test_queue_policy_is_fifo(self, scheduler, graph_registry, gate):
        _register(graph_registry, SLOW_DEFINITION.format(admission="queue"))
        first = scheduler.trigger_run("slow")
        assert gate.entered.wait(WAIT)
        second = scheduler.trigger_run("slow")
        third = scheduler.trigger_run("slow")

        assert scheduler.active_runs("slow") == [first]
        assert scheduler.queued_runs("slow") == [second, third]
        queued = scheduler.get_run_status(second)
        assert queued.status == RunStatus.QUEUED
        assert queued.started_at is None

        gate.opened.set()
        runs = [scheduler.wait_for_run(rid, timeout=WAIT) for rid in (first, second, third)]

        assert [r.status for r in runs] == [RunStatus.SUCCEEDED] * 3
        assert runs[0].finished_at <= runs[1].started_at
        assert runs[1].finished_at <= runs[2].started_at

    def test_queued_run_binds_version_at_trigger(self, scheduler, graph_registry, gate):
        _register(graph_registry, SLOW_DEFINITION.format(admission="queue"))
        first = scheduler.trigger_run("slow")
        assert gate.entered.wait(WAIT)
        second = scheduler.trigger_run("slow")
        _register(graph_registry, SLOW_DEFINITION.format(admission="queue").replace("wait", "wait2"))
        third = scheduler.trigger_run("slow")

        gate.opened.set()
        assert scheduler.wait_for_run(first, timeout=WAIT).graph_version == 1
        assert scheduler.wait_for_run(second, timeout=WAIT).graph_version == 1
        latest = scheduler.wait_for_run(third, timeout=WAIT)
        assert latest.graph_version == 2
        assert set(latest.task_states) == {"wait2"}

    def test_run_on_change(self, scheduler, graph_registry):
        graph = _register(graph_registry, """\
product_id: p
policy: {run_on_change: true}
tasks:
  - {id: a, config: {callable: download}}
""")

        run_id = scheduler.on_graph_registered(graph)

        run = scheduler.wait_for_run(run_id, timeout=WAIT)
        assert run.reason == "change"
        assert run.status == RunStatus.SUCCEEDED

    def test_no_run_on_change_by_default(self, scheduler, graph_registry, weather_definition):
        graph = graph_registry.register(parse(weather_definition))
        assert scheduler.on_graph_registered(graph) is None
        assert scheduler.list_runs() == []

    def test_shutdown_stops_admission(self, scheduler, graph_registry, weather_definition):
        graph_registry.register(parse(weather_definition))
        scheduler.shutdown()

        with pytest.raises(AdmissionRejected) as exc_info:
            scheduler.trigger_run("weather")
        assert exc_info.value.reason == AdmissionRejected.SHUTTING_DOWN


    def test_shutdown_drains_running_runs(self, scheduler, graph_registry, inline, recorder):
        def slow(task, context):
            time.sleep(0.1)

        inline.register_callable("slow", slow)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: slow}}
  - {id: b, config: {callable: download}, upstream: [a]}
""")
        run_id = scheduler.trigger_run("p")

        scheduler.shutdown(wait=True)

        run = scheduler.get_run_status(run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert run.state_of("b") == TaskState.SUCCEEDED
        assert recorder.count("b") == 1

    def test_shutdown_can_cancel_running_runs(self, scheduler, graph_registry, gate, recorder):
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: block}}
  - {id: b, config: {callable: download}, upstream: [a]}
""")
        run_id = scheduler.trigger_run("p")
        assert gate.entered.wait(WAIT)

        scheduler.shutdown(wait=True, cancel_running=True)

        run = scheduler.get_run_status(run_id)
        assert run.status == RunStatus.CANCELLED
        assert {tr.state for tr in run.task_states.values()} == {TaskState.SKIPPED}
        assert recorder.count("b") == 0


class TestCancellation:
    def test_cancel_running_run(self, scheduler, graph_registry, gate):
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: block}}
  - {id: b, config: {callable: download}, upstream: [a]}
""")
        run_id = scheduler.trigger_run("p")
        assert gate.entered.wait(WAIT)

        assert scheduler.cancel_run(run_id) is True

        run = scheduler.wait_for_run(run_id, timeout=WAIT)
        assert run.status == RunStatus.CANCELLED
        assert run.state_of("a") == TaskState.SKIPPED
        assert run.state_of("b") == TaskState.SKIPPED
        _assert_finished_consistently(run)
        assert scheduler.cancel_run(run_id) is False

    def test_cancel_queued_run(self, scheduler, graph_registry, gate):
        _register(graph_registry, SLOW_DEFINITION.format(admission="queue"))
        first = scheduler.trigger_run("slow")
        assert gate.entered.wait(WAIT)
        second = scheduler.trigger_run("slow")

        scheduler.cancel_run(second)

        assert scheduler.queued_runs("slow") == []
        assert scheduler.get_run_status(second).status == RunStatus.CANCELLED
        gate.opened.set()
        assert scheduler.wait_for_run(first, timeout=WAIT).status == RunStatus.SUCCEEDED

    def test_result_of_uncancellable_task_is_discarded(self, scheduler, graph_registry, inline, recorder):
        entered = threading.Event()
        release = threading.Event()
        returned = threading.Event()

        def stubborn(task, context):
            entered.set()
            release.wait(WAIT)
            returned.set()
            return ["raw"]

        inline.register_callable("stubborn", stubborn)
        _register(graph_registry, """\
product_id: p
tasks:
  - {id: a, config: {callable: stubborn}, outlets: [raw]}
  - {id: b, config: {callable: download}, upstream: [a]}
""")
        run_id = scheduler.trigger_run("p")
        assert entered.wait(WAIT)

        assert scheduler.cancel_run(run_id) is True
        release.set()
        assert returned.wait(WAIT)
        time.sleep(0.1)

        run = scheduler.get_run_status(run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.state_of("a") == TaskState.SKIPPED
        assert run.task_states["a"].output_assets == frozenset()
        assert run.state_of("b") == TaskState.SKIPPED
        assert recorder.count("b") == 0

    def test_cancel_unknown_run(self, scheduler):
        with pytest.raises(RunNotFoundError):
            scheduler.cancel_run("01NOTARUN")


class TestConcurrency:
    def test_independent_tasks_run_concurrently(self, scheduler, graph_registry, inline):
        # b and c only get past the barrier if they are executing at the same time
        barrier = threading.Barrier(2, timeout=WAIT)

        def meet(task, context):
            barrier.wait()

        inline.register_callable("meet", meet)
        _register(graph_registry, """\
product_id: diamond
tasks:
  - {id: a, config: {callable: download}}
  - {id: b, config: {callable: meet}, upstream: [a]}
  - {id: c, config: {callable: meet}, upstream: [a]}
  - {id: d, config: {callable: download}, upstream: [b, c]}
""")

        run = scheduler.wait_for_run(scheduler.trigger_run("diamond"), timeout=WAIT)

        assert run.status == RunStatus.SUCCEEDED
        assert run.state_of("d") == TaskState.SUCCEEDED

    def test_retired_product_run_finishes_on_its_version(self, scheduler, graph_registry, gate):
        _register(graph_registry, SLOW_DEFINITION.format(admission="queue"))
        run_id = scheduler.trigger_run("slow")
        assert gate.entered.wait(WAIT)

        graph_registry.retire("slow")
        gate.opened.set()

        run = scheduler.wait_for_run(run_id, timeout=WAIT)
        assert run.status == RunStatus.SUCCEEDED
        assert run.graph_version == 1
        with pytest.raises(AdmissionRejected):
            scheduler.trigger_run("slow")


class TestRunStatus:
    def test_snapshot_is_immutable(self, scheduler, graph_registry, weather_definition):
        graph_registry.register(parse(weather_definition))
        run = scheduler.wait_for_run(scheduler.trigger_run("weather"), timeout=WAIT)

        with pytest.raises(TypeError):
            run.task_states["download"] = None

    def test_runs_are_persisted(self, scheduler, graph_registry, weather_definition, run_store):
        graph_registry.register(parse(weather_definition))
        run_id = scheduler.trigger_run("weather")
        scheduler.wait_for_run(run_id, timeout=WAIT)

        stored = run_store.get_run(run_id)
        assert stored.status == RunStatus.SUCCEEDED
        assert stored.finished_at is not None

    def test_status_falls_back_to_run_store(self, scheduler, graph_registry, dispatch, weather_definition, run_store):
        graph_registry.register(parse(weather_definition))
        run_id = scheduler.trigger_run("weather")
        scheduler.wait_for_run(run_id, timeout=WAIT)

        fresh = Scheduler(graph_registry, dispatch, run_store=run_store)
        try:
            assert fresh.get_run_status(run_id).status == RunStatus.SUCCEEDED
            with pytest.raises(RunNotFoundError):
                fresh.get_run_status("01NOTARUN")
        finally:
            fresh.shutdown()

    def test_list_runs_oldest_first(self, scheduler, graph_registry, weather_definition):
        graph_registry.register(parse(weather_definition))
        ids = [scheduler.trigger_run("weather") for _ in range(3)]
        for run_id in ids:
            scheduler.wait_for_run(run_id, timeout=WAIT)

        assert [r.run_id for r in scheduler.list_runs("weather")] == ids
        assert scheduler.list_runs("other") == []

    def test_invalid_max_workers(self, graph_registry, dispatch):
        with pytest.raises(ValueError):
            Scheduler(graph_registry, dispatch, max_workers=0)
