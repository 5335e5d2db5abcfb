"""
RunStore - Persist run snapshots.

The Scheduler owns live run state; the RunStore keeps the immutable Run
snapshots it publishes at run boundaries (admitted, started, finished) so
that status queries survive a scheduler restart.

Storage backends:
- In-memory (for testing)
- File-based (one JSON document per run)
"""

import json
import os
import random
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from productflow.schemas import Run


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def _sort_key(run: Run) -> tuple:
    return (run.created_at.timestamp() if run.created_at else 0.0, run.run_id)


class RunStore(ABC):
    """
    Abstract base class for run snapshot storage.
    """

    @abstractmethod
    def save_run(self, run: Run) -> None:
        """
        Store or replace the snapshot of a run.

        Args:
            run: The Run snapshot to store
        """
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[Run]:
        """
        Retrieve a run snapshot by ID.

        Args:
            run_id: The ULID of the run

        Returns:
            The Run if found, None otherwise
        """
        pass

    @abstractmethod
    def list_runs(self, product_id: Optional[str] = None) -> list[Run]:
        """
        List stored runs, oldest first.

        Args:
            product_id: Restrict to one product
        """
        pass


class InMemoryRunStore(RunStore):
    """
    In-memory implementation of RunStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: dict[str, Run] = {}

    def save_run(self, run: Run) -> None:
        with self._lock:
            self._runs[run.run_id] = run

    def get_run(self, run_id: str) -> Optional[Run]:
        return self._runs.get(run_id)

    def list_runs(self, product_id: Optional[str] = None) -> list[Run]:
        with self._lock:
            runs = list(self._runs.values())
        if product_id is not None:
            runs = [r for r in runs if r.product_id == product_id]
        return sorted(runs, key=_sort_key)

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._runs.clear()


class FileRunStore(RunStore):
    """
    File-based implementation of RunStore.

    Stores snapshots as JSON files:
        store_dir/
            runs/
                {run_id}.json
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir).expanduser()
        self._lock = threading.Lock()
        (self._store_dir / "runs").mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str) -> Path:
        return self._store_dir / "runs" / f"{run_id}.json"

    def save_run(self, run: Run) -> None:
        path = self._path(run.run_id)
        tmp_path = path.with_suffix(".json.tmp")
        with self._lock:
            with open(tmp_path, "w") as f:
                json.dump(run.to_dict(), f, indent=2)
            # Readers never see a half-written snapshot
            os.replace(tmp_path, path)

    def get_run(self, run_id: str) -> Optional[Run]:
        path = self._path(run_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return Run.from_dict(data)

    def list_runs(self, product_id: Optional[str] = None) -> list[Run]:
        runs = []
        for path in (self._store_dir / "runs").glob("*.json"):
            with open(path) as f:
                run = Run.from_dict(json.load(f))
            if product_id is None or run.product_id == product_id:
                runs.append(run)
        return sorted(runs, key=_sort_key)
