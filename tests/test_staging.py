"""Tests for staging store adapters."""

from unittest.mock import MagicMock

import pytest

from productflow.errors import StagingError
from productflow.staging import (
    InMemoryStagingStore,
    LocalStagingStore,
    StagingStore,
    index_by_product,
    product_path_for,
)
from productflow.staging.minio_store import MinioStagingStore


class TestProductPath:
    """Mapping staging keys to product paths."""

    @pytest.mark.parametrize("key,expected", [
        ("definitions/weather.yaml", "weather"),
        ("weather.yml", "weather"),
        ("products/air_quality.json", "air_quality"),
        ("definitions/WEATHER.YAML", "WEATHER"),
        ("definitions/README.md", None),
        ("definitions/_deprecated/weather.yaml", None),
        ("definitions/.yaml", None),
    ])
    def test_product_path_for(self, key, expected):
        assert product_path_for(key) == expected

    def test_first_key_wins_on_collision(self):
        store = InMemoryStagingStore({
            "b/weather.yaml": b"x",
            "a/weather.yml": b"y",
            "a/climate.json": b"z",
        })
        assert index_by_product(store) == {"weather": "a/weather.yml", "climate": "a/climate.json"}


class TestInMemoryStagingStore:
    def test_put_fetch_delete(self):
        store = InMemoryStagingStore()
        store.put("weather.yaml", "product_id: weather")
        assert store.fetch("weather.yaml") == b"product_id: weather"

        store.delete("weather.yaml")
        assert store.list_keys() == []
        with pytest.raises(StagingError):
            store.fetch("weather.yaml")

    def test_listing_failure(self):
        store = InMemoryStagingStore()
        store.fail_listing = True
        with pytest.raises(StagingError):
            store.list_keys()

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryStagingStore(), StagingStore)


class TestLocalStagingStore:
    def test_lists_relative_posix_keys(self, tmp_path):
        (tmp_path / "definitions").mkdir()
        (tmp_path / "definitions" / "weather.yaml").write_text("product_id: weather")
        (tmp_path / "top.yaml").write_text("product_id: top")

        store = LocalStagingStore(tmp_path)

        assert store.list_keys() == ["definitions/weather.yaml", "top.yaml"]
        assert store.fetch("definitions/weather.yaml") == b"product_id: weather"

    def test_missing_root_is_a_staging_error(self, tmp_path):
        with pytest.raises(StagingError):
            LocalStagingStore(tmp_path / "missing").list_keys()

    def test_missing_key_is_a_staging_error(self, tmp_path):
        with pytest.raises(StagingError):
            LocalStagingStore(tmp_path).fetch("nope.yaml")


class TestMinioStagingStore:
    """MinIO adapter against a mocked client."""

    def _object(self, name: str, is_dir: bool = False):
        obj = MagicMock()
        obj.object_name = name
        obj.is_dir = is_dir
        return obj

    def test_list_keys(self):
        client = MagicMock()
        client.list_objects.return_value = [
            self._object("definitions/weather.yaml"),
            self._object("definitions/sub/", is_dir=True),
            self._object("definitions/air.yaml"),
        ]
        store = MinioStagingStore("minio:9000", "pipelines", prefix="definitions/", client=client)

        assert store.list_keys() == ["definitions/air.yaml", "definitions/weather.yaml"]
        client.list_objects.assert_called_once_with("pipelines", prefix="definitions/", recursive=True)

    def test_fetch_releases_connection(self):
        response = MagicMock()
        response.read.return_value = b"product_id: weather"
        client = MagicMock()
        client.get_object.return_value = response
        store = MinioStagingStore("minio:9000", "pipelines", client=client)

        assert store.fetch("weather.yaml") == b"product_id: weather"
        response.close.assert_called_once()
        response.release_conn.assert_called_once()

    def test_unreachable_store(self):
        client = MagicMock()
        client.list_objects.side_effect = ConnectionRefusedError("connection refused")
        store = MinioStagingStore("minio:9000", "pipelines", client=client)

        with pytest.raises(StagingError, match="unreachable"):
            store.list_keys()
