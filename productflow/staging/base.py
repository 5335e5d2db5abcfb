"""
Staging store interface and local implementations.

The staging store is the intermediate object store an external CI pipeline
writes definition artifacts to. productflow only lists and reads it.

Keys map to product paths by base name without extension:
    definitions/weather.yaml -> weather
    products/air_quality.json -> air_quality
"""

import logging
import threading
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from productflow.errors import StagingError

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")


def product_path_for(key: str) -> Optional[str]:
    """
    Return the product path a staging key belongs to, or None if the key is
    not a definition artifact.
    """
    if "_deprecated" in key:
        return None
    name = key.rsplit("/", 1)[-1]
    for suffix in DEFINITION_SUFFIXES:
        if name.lower().endswith(suffix):
            stem = name[: -len(suffix)]
            return stem or None
    return None


@runtime_checkable
class StagingStore(Protocol):
    """
    Read-only view of the staging object store.

    Implementations raise StagingError when the store cannot be reached.
    """

    def list_keys(self) -> list[str]:
        """List all object keys under the configured prefix."""
        ...

    def fetch(self, key: str) -> bytes:
        """Return the content of one object."""
        ...


def index_by_product(store: StagingStore) -> dict[str, str]:
    """
    Map product path -> staging key for every definition artifact.

    When two keys map to the same product path the lexicographically first
    key wins.
    """
    index: dict[str, str] = {}
    for key in sorted(store.list_keys()):
        product = product_path_for(key)
        if product is None:
            continue
        if product in index:
            logger.warning(
                f"Ignoring {key}: product '{product}' already staged as {index[product]}"
            )
            continue
        index[product] = key
    return index


class InMemoryStagingStore:
    """
    In-memory staging store for testing.

    Tests play the role of the CI pipeline through put() and delete().
    """

    def __init__(self, objects: Optional[dict[str, bytes]] = None):
        self._lock = threading.Lock()
        self._objects: dict[str, bytes] = dict(objects or {})
        self.fail_listing = False

    def put(self, key: str, content: bytes | str) -> None:
        if isinstance(content, str):
            content = content.encode()
        with self._lock:
            self._objects[key] = content

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def list_keys(self) -> list[str]:
        if self.fail_listing:
            raise StagingError("in-memory staging store is unavailable")
        with self._lock:
            return sorted(self._objects)

    def fetch(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise StagingError(f"Object not found: {key}")
            return self._objects[key]


class LocalStagingStore:
    """
    Directory-backed staging store for development and CI dry runs.

    Keys are POSIX paths relative to the root directory.
    """

    def __init__(self, root: Path | str):
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def list_keys(self) -> list[str]:
        if not self._root.exists():
            raise StagingError(f"Staging directory does not exist: {self._root}")
        return sorted(
            p.relative_to(self._root).as_posix()
            for p in self._root.glob("**/*")
            if p.is_file()
        )

    def fetch(self, key: str) -> bytes:
        path = self._root / key
        try:
            return path.read_bytes()
        except OSError as e:
            raise StagingError(f"Failed to read {path}: {e}") from e
