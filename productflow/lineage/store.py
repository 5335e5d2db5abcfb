"""
Lineage stores - idempotent edge persistence.

A LineageStore upserts (producer, consumer, asset) edges; writing the same
triple twice leaves exactly one edge.
"""

import threading
from typing import Protocol, runtime_checkable

from productflow.schemas import LineageEdge


@runtime_checkable
class LineageStore(Protocol):
    """
    Protocol for the external metadata/lineage store.

    upsert_lineage_edge returns True when the edge was newly written and
    False when it already existed. Connectivity problems are raised.
    """

    def upsert_lineage_edge(self, producer: str, consumer: str, asset: str) -> bool:
        ...


class InMemoryLineageStore:
    """
    In-memory lineage store for testing and development.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._edges: dict[tuple[str, str, str], LineageEdge] = {}

    def upsert_lineage_edge(self, producer: str, consumer: str, asset: str) -> bool:
        edge = LineageEdge(producer=producer, consumer=consumer, asset=asset)
        with self._lock:
            if edge.key in self._edges:
                return False
            self._edges[edge.key] = edge
            return True

    def edges(self) -> list[LineageEdge]:
        with self._lock:
            return sorted(self._edges.values(), key=lambda e: e.key)

    def clear(self) -> None:
        with self._lock:
            self._edges.clear()
