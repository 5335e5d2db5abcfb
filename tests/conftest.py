import threading

import pytest

from productflow.handlers import DispatchRegistry, InlineExecutor
from productflow.lineage import InMemoryLineageStore, LineageRegistrar
from productflow.registry import GraphRegistry
from productflow.run_store import InMemoryRunStore
from productflow.scheduler import Scheduler


WEATHER_DEFINITION = """\
product_id: weather
tasks:
  - id: download
    kind: inline
    config: {callable: download}
    outlets: [raw]
  - id: schema
    kind: inline
    config: {callable: schema}
    upstream: [download]
  - id: register
    kind: inline
    config: {callable: register}
    upstream: [schema]
    outlets:
      - {name: table, schema_hint: "station STRING, temp FLOAT"}
"""


class CallRecorder:
    """Inline callables that record every invocation."""

    def __init__(self):
        self.lock = threading.Lock()
        self.calls: list[tuple[str, str, int]] = []

    def record(self, task, context):
        with self.lock:
            self.calls.append((context.run_id, task.id, context.attempt))

    def count(self, task_id: str) -> int:
        with self.lock:
            return sum(1 for _, tid, _ in self.calls if tid == task_id)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Never read or write the real ~/.config/productflow."""
    home = tmp_path / "productflow_home"
    monkeypatch.setenv("PRODUCTFLOW_HOME", str(home))
    return home


@pytest.fixture
def recorder():
    return CallRecorder()


@pytest.fixture
def inline(recorder):
    executor = InlineExecutor()
    for name in ("download", "schema", "register"):
        executor.register_callable(name, recorder.record)
    return executor


@pytest.fixture
def graph_registry():
    return GraphRegistry()


@pytest.fixture
def lineage_store():
    return InMemoryLineageStore()


@pytest.fixture
def registrar(lineage_store):
    return LineageRegistrar(lineage_store, retry_interval_seconds=0.05, max_attempts=3)


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def dispatch(inline):
    registry = DispatchRegistry(max_dispatch_attempts=2, dispatch_backoff_seconds=0.0)
    registry.register("inline", inline)
    return registry


@pytest.fixture
def scheduler(graph_registry, dispatch, registrar, run_store):
    sched = Scheduler(graph_registry, dispatch, lineage=registrar, run_store=run_store, max_workers=4)
    yield sched
    sched.shutdown(wait=True, cancel_running=True)


@pytest.fixture
def weather_definition() -> bytes:
    return WEATHER_DEFINITION.encode()
