"""
GraphRegistry - the set of Graph Models known to the Scheduler.

The registry provides:
- Registration of new GraphModel versions (version numbers only increase)
- The current version per product, as an atomically-swapped immutable snapshot
- Version history for runs still executing an older version
- Retirement of products whose staging artifacts were deleted
- Content-addressable lookup via fingerprint

Readers call snapshot() and get a RegistrySnapshot that never changes
underneath them. Writers build a new snapshot under a lock and swap the
reference in one assignment, so readers never take the lock and never
observe a partially-updated registry.
"""

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from productflow.schemas import GraphModel

logger = logging.getLogger(__name__)


class ProductNotFoundError(KeyError):
    """Raised when a product or product version is not registered."""
    pass


@dataclass(frozen=True)
class RegistrySnapshot:
    """
    Immutable view of the registry at one point in time.

    Attributes:
        current: product_id -> current GraphModel
        retired: product ids whose staging artifacts were deleted
        generation: increments on every swap
    """
    current: Mapping[str, GraphModel] = field(default_factory=dict)
    retired: frozenset[str] = field(default_factory=frozenset)
    generation: int = 0

    def __post_init__(self):
        object.__setattr__(self, "current", MappingProxyType(dict(self.current)))

    def get(self, product_id: str) -> Optional[GraphModel]:
        return self.current.get(product_id)

    def is_retired(self, product_id: str) -> bool:
        return product_id in self.retired

    def active_products(self) -> list[str]:
        return sorted(p for p in self.current if p not in self.retired)


class GraphRegistry:
    """
    Copy-on-write registry of Graph Models.

    Usage:
        registry = GraphRegistry()
        graph = registry.register(parse(definition_bytes, "weather"))
        registry.current("weather").version  # 1
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._snapshot = RegistrySnapshot()
        # product_id -> version -> GraphModel (append-only)
        self._history: dict[str, dict[int, GraphModel]] = {}
        self._fingerprints: dict[str, GraphModel] = {}

    def snapshot(self) -> RegistrySnapshot:
        """Return the current immutable snapshot (lock-free)."""
        return self._snapshot

    def current(self, product_id: str) -> Optional[GraphModel]:
        """Return the current GraphModel for a product, or None."""
        return self._snapshot.get(product_id)

    def is_retired(self, product_id: str) -> bool:
        return self._snapshot.is_retired(product_id)

    def register(self, graph: GraphModel) -> GraphModel:
        """
        Register a parsed graph as the new current version of its product.

        The graph's version field is ignored; the registry assigns the next
        version number. A retired product becomes active again.

        Args:
            graph: A validated GraphModel (typically from parse())

        Returns:
            The registered GraphModel carrying its assigned version
        """
        with self._write_lock:
            versions = self._history.setdefault(graph.product_id, {})
            next_version = max(versions, default=0) + 1
            registered = graph.with_version(next_version)
            versions[next_version] = registered
            if registered.fingerprint:
                self._fingerprints[registered.fingerprint] = registered

            old = self._snapshot
            current = dict(old.current)
            current[graph.product_id] = registered
            self._snapshot = RegistrySnapshot(
                current=current,
                retired=old.retired - {graph.product_id},
                generation=old.generation + 1,
            )

        logger.info(
            f"Registered {graph.product_id} v{next_version}",
            extra={"event": "graph.registered",
                   "metadata": {"product_id": graph.product_id, "version": next_version}},
        )
        return registered

    def retire(self, product_id: str) -> bool:
        """
        Mark a product as retired. Its versions are kept for in-flight runs.

        Returns:
            True if the product was active and is now retired
        """
        with self._write_lock:
            old = self._snapshot
            if product_id not in old.current or product_id in old.retired:
                return False
            self._snapshot = RegistrySnapshot(
                current=old.current,
                retired=old.retired | {product_id},
                generation=old.generation + 1,
            )

        logger.info(
            f"Retired {product_id}",
            extra={"event": "graph.retired", "metadata": {"product_id": product_id}},
        )
        return True

    def get_version(self, product_id: str, version: int) -> GraphModel:
        """
        Load a specific registered version.

        Raises:
            ProductNotFoundError: If the product or version is unknown
        """
        try:
            return self._history[product_id][version]
        except KeyError:
            raise ProductNotFoundError(f"{product_id} v{version} is not registered")

    def versions(self, product_id: str) -> list[int]:
        """List all registered versions of a product in ascending order."""
        return sorted(self._history.get(product_id, {}))

    def load_by_fingerprint(self, fingerprint: str) -> Optional[GraphModel]:
        """Return the most recently registered graph with this fingerprint, if any."""
        return self._fingerprints.get(fingerprint)

    def list_products(self, include_retired: bool = False) -> list[str]:
        """List registered product ids."""
        snap = self._snapshot
        if include_retired:
            return sorted(snap.current)
        return snap.active_products()
