"""
LineageRegistrar - publishes producer/consumer edges for successful tasks.

For a successful task T in product P:
- production edges:  task:P/T -> asset:<name>   for each output asset
- consumption edges: asset:<name> -> task:P/T   for each upstream asset

register() is idempotent per (run_id, task_id) while the run is live;
forget_run() releases that bookkeeping once the run has finished. A
failed publish never fails the task: the pending registration is queued
and retried by retry_pending(), which a daemon thread runs every
retry_interval_seconds until the item succeeds or max_attempts is
exhausted.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from productflow.errors import RegistrationError
from productflow.lineage.store import LineageStore
from productflow.schemas import Asset, LineageEdge, asset_node, task_node
from productflow.utils import sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class PendingRegistration:
    run_id: str
    task_id: str
    edges: list[LineageEdge]
    attempts: int = 1
    last_error: Optional[str] = None


def build_edges(
    product_id: str,
    task_id: str,
    output_assets: Iterable[Asset],
    upstream_assets: Iterable[Asset],
) -> list[LineageEdge]:
    """Build the lineage edges for one successful task, sorted for stable writes."""
    node = task_node(product_id, task_id)
    edges = {
        LineageEdge(producer=node, consumer=asset_node(a.name), asset=a.name)
        for a in output_assets
    }
    edges.update(
        LineageEdge(producer=asset_node(a.name), consumer=node, asset=a.name)
        for a in upstream_assets
    )
    return sorted(edges, key=lambda e: e.key)


class LineageRegistrar:
    """
    Registers lineage for successful task completions.

    Usage:
        registrar = LineageRegistrar(InMemoryLineageStore())
        registrar.register(run_id, "download", outputs, upstream, product_id="weather")
        registrar.start()   # background retry of failed registrations
        registrar.stop()
    """

    def __init__(
        self,
        store: LineageStore,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.retry_interval_seconds = retry_interval_seconds
        self.max_attempts = max_attempts

        self._lock = threading.Lock()
        # run id -> task ids registered for that run
        self._registered: dict[str, set[str]] = {}
        self._pending: dict[tuple[str, str], PendingRegistration] = {}

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(
        self,
        run_id: str,
        task_id: str,
        output_assets: Iterable[Asset],
        upstream_assets: Iterable[Asset],
        *,
        product_id: str,
    ) -> bool:
        """
        Publish lineage edges for a successful task.

        Returns:
            True if edges were written, False if this (run_id, task_id)
            was already registered

        Raises:
            RegistrationError: If the store write failed; the registration
                               has been queued for retry
        """
        key = (run_id, task_id)
        with self._lock:
            registered = self._registered.setdefault(run_id, set())
            if task_id in registered:
                return False
            pending = self._pending.pop(key, None)

        edges = pending.edges if pending else build_edges(product_id, task_id, output_assets, upstream_assets)
        attempts = pending.attempts + 1 if pending else 1

        try:
            self._write(edges)
        except Exception as e:
            message = sanitize_error_message(e)
            with self._lock:
                self._pending[key] = PendingRegistration(run_id, task_id, edges, attempts, message)
            logger.warning(
                f"Lineage registration for {run_id}/{task_id} failed (attempt {attempts}), queued for retry: {message}"
            )
            raise RegistrationError(run_id, task_id, message) from e

        with self._lock:
            registered.add(task_id)
        logger.info(
            f"Registered {len(edges)} lineage edge(s) for {run_id}/{task_id}",
            extra={"event": "lineage.registered",
                   "metadata": {"run_id": run_id, "task_id": task_id,
                                "edges": [e.to_dict() for e in edges]}},
        )
        return True

    def _write(self, edges: list[LineageEdge]) -> None:
        for edge in edges:
            self.store.upsert_lineage_edge(edge.producer, edge.consumer, edge.asset)

    def is_registered(self, run_id: str, task_id: str) -> bool:
        return task_id in self._registered.get(run_id, ())

    def forget_run(self, run_id: str) -> None:
        """
        Drop idempotency bookkeeping for a finished run.

        Pending registrations of the run are kept and still retried.
        """
        with self._lock:
            self._registered.pop(run_id, None)

    def pending(self) -> list[PendingRegistration]:
        with self._lock:
            return list(self._pending.values())

    def retry_pending(self) -> int:
        """
        Retry every queued registration once.

        Items that reach max_attempts are logged at ERROR and dropped.

        Returns:
            Number of registrations that succeeded
        """
        with self._lock:
            items = list(self._pending.items())
            for key, _ in items:
                del self._pending[key]

        succeeded = 0
        for key, item in items:
            try:
                self._write(item.edges)
            except Exception as e:
                item.attempts += 1
                item.last_error = sanitize_error_message(e)
                if item.attempts >= self.max_attempts:
                    logger.error(
                        f"Giving up lineage registration for {item.run_id}/{item.task_id} "
                        f"after {item.attempts} attempts: {item.last_error}",
                        extra={"event": "lineage.dropped",
                               "metadata": {"run_id": item.run_id, "task_id": item.task_id}},
                    )
                    continue
                with self._lock:
                    self._pending.setdefault(key, item)
                continue

            with self._lock:
                if item.run_id in self._registered:
                    self._registered[item.run_id].add(item.task_id)
            succeeded += 1
            logger.info(f"Lineage registration for {item.run_id}/{item.task_id} succeeded on retry")
        return succeeded

    # -- background retry -------------------------------------------------------

    def start(self) -> None:
        """Start the background retry loop (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="productflow-lineage-retry", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop.wait(self.retry_interval_seconds):
            if self._pending:
                try:
                    self.retry_pending()
                except Exception:
                    logger.exception("Unexpected error retrying lineage registrations")
