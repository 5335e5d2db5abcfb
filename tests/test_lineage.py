"""Tests for lineage registration and stores."""

import time
from unittest.mock import MagicMock

import pytest

from productflow.errors import RegistrationError
from productflow.lineage import InMemoryLineageStore, LineageRegistrar, LineageStore
from productflow.lineage.bigquery_store import BigQueryLineageStore
from productflow.lineage.registrar import build_edges
from productflow.schemas import Asset, LineageEdge


RAW = Asset("raw", "download")
TABLE = Asset("table", "register")


class FlakyStore(InMemoryLineageStore):
    """Fails the first `failures` writes, then behaves normally."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    def upsert_lineage_edge(self, producer, consumer, asset):
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("metadata store unreachable")
        return super().upsert_lineage_edge(producer, consumer, asset)


class TestBuildEdges:
    def test_production_and_consumption(self):
        edges = build_edges("weather", "schema", [TABLE], [RAW])
        assert edges == [
            LineageEdge("asset:raw", "task:weather/schema", "raw"),
            LineageEdge("task:weather/schema", "asset:table", "table"),
        ]

    def test_no_assets_no_edges(self):
        assert build_edges("weather", "schema", [], []) == []


class TestInMemoryLineageStore:
    def test_upsert_is_idempotent(self):
        store = InMemoryLineageStore()
        assert store.upsert_lineage_edge("task:weather/download", "asset:raw", "raw") is True
        assert store.upsert_lineage_edge("task:weather/download", "asset:raw", "raw") is False
        assert len(store.edges()) == 1

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryLineageStore(), LineageStore)


class TestLineageRegistrar:
    def test_register_once_per_task(self, registrar, lineage_store):
        assert registrar.register("run1", "download", [RAW], [], product_id="weather") is True
        assert registrar.register("run1", "download", [RAW], [], product_id="weather") is False

        assert lineage_store.edges() == [LineageEdge("task:weather/download", "asset:raw", "raw")]
        assert registrar.is_registered("run1", "download")

    def test_forget_run_releases_bookkeeping(self, registrar):
        registrar.register("run1", "download", [RAW], [], product_id="weather")
        registrar.register("run2", "download", [RAW], [], product_id="weather")

        registrar.forget_run("run1")

        assert not registrar.is_registered("run1", "download")
        assert registrar.is_registered("run2", "download")
        assert set(registrar._registered) == {"run2"}

    def test_forget_run_keeps_pending_retries(self):
        store = FlakyStore(failures=1)
        registrar = LineageRegistrar(store, max_attempts=3)
        with pytest.raises(RegistrationError):
            registrar.register("run1", "download", [RAW], [], product_id="weather")

        registrar.forget_run("run1")

        assert registrar.retry_pending() == 1
        assert len(store.edges()) == 1
        assert registrar._registered == {}

    def test_repeated_runs_do_not_duplicate_edges(self, registrar, lineage_store):
        registrar.register("run1", "download", [RAW], [], product_id="weather")
        registrar.register("run2", "download", [RAW], [], product_id="weather")
        assert len(lineage_store.edges()) == 1

    def test_failure_is_queued(self):
        registrar = LineageRegistrar(FlakyStore(failures=1), max_attempts=3)

        with pytest.raises(RegistrationError):
            registrar.register("run1", "download", [RAW], [], product_id="weather")

        (pending,) = registrar.pending()
        assert (pending.run_id, pending.task_id, pending.attempts) == ("run1", "download", 1)
        assert "unreachable" in pending.last_error
        assert not registrar.is_registered("run1", "download")

    def test_retry_pending_succeeds(self):
        store = FlakyStore(failures=1)
        registrar = LineageRegistrar(store, max_attempts=3)
        with pytest.raises(RegistrationError):
            registrar.register("run1", "download", [RAW], [], product_id="weather")

        assert registrar.retry_pending() == 1
        assert registrar.pending() == []
        assert registrar.is_registered("run1", "download")
        assert len(store.edges()) == 1

    def test_gives_up_after_max_attempts(self):
        registrar = LineageRegistrar(FlakyStore(failures=10), max_attempts=3)
        with pytest.raises(RegistrationError):
            registrar.register("run1", "download", [RAW], [], product_id="weather")

        assert registrar.retry_pending() == 0
        assert len(registrar.pending()) == 1
        assert registrar.retry_pending() == 0
        assert registrar.pending() == []
        assert not registrar.is_registered("run1", "download")

    def test_register_drains_matching_pending_item(self):
        store = FlakyStore(failures=1)
        registrar = LineageRegistrar(store, max_attempts=3)
        with pytest.raises(RegistrationError):
            registrar.register("run1", "download", [RAW], [], product_id="weather")

        assert registrar.register("run1", "download", [RAW], [], product_id="weather") is True
        assert registrar.pending() == []

    def test_background_retry(self):
        store = FlakyStore(failures=1)
        registrar = LineageRegistrar(store, retry_interval_seconds=0.02, max_attempts=5)
        with pytest.raises(RegistrationError):
            registrar.register("run1", "download", [RAW], [], product_id="weather")

        registrar.start()
        try:
            for _ in range(250):
                if registrar.is_registered("run1", "download"):
                    break
                time.sleep(0.02)
        finally:
            registrar.stop(timeout=5)

        assert registrar.is_registered("run1", "download")

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            LineageRegistrar(InMemoryLineageStore(), max_attempts=0)


class TestBigQueryLineageStore:
    """MERGE-based store against a mocked BigQuery client."""

    def _client(self, affected_rows):
        client = MagicMock()
        client.query.return_value.num_dml_affected_rows = affected_rows
        return client

    def test_upsert_runs_parameterized_merge(self):
        client = self._client(1)
        store = BigQueryLineageStore(client, "acme.lineage.lineage_edges")

        assert store.upsert_lineage_edge("task:weather/download", "asset:raw", "raw") is True

        query = client.query.call_args.args[0]
        assert "MERGE `acme.lineage.lineage_edges`" in query
        assert "WHEN NOT MATCHED THEN" in query
        params = client.query.call_args.kwargs["job_config"].query_parameters
        assert {p.name: p.value for p in params} == {
            "producer": "task:weather/download",
            "consumer": "asset:raw",
            "asset": "raw",
        }
        client.query.return_value.result.assert_called_once()

    def test_existing_edge_returns_false(self):
        store = BigQueryLineageStore(self._client(0), "acme.lineage.lineage_edges")
        assert store.upsert_lineage_edge("task:weather/download", "asset:raw", "raw") is False

    def test_ensure_table(self):
        client = MagicMock()
        BigQueryLineageStore(client, "acme.lineage.lineage_edges").ensure_table()

        table = client.create_table.call_args.args[0]
        assert [f.name for f in table.schema] == ["producer", "consumer", "asset", "recorded_at"]
        assert client.create_table.call_args.kwargs["exists_ok"] is True
