"""
SyncAgent - reconcile staged definitions with the GraphRegistry.

Reconciliation is an idempotent diff-and-apply over
(desired state: artifacts in staging storage) vs (current registered state):

1. List staging keys and map them to product paths
2. For each product, fingerprint the normalized definition bytes
3. Unseen or changed fingerprint -> parse; on success register a new
   version and make it current; on ValidationError keep the previous
   current version and surface the error
4. Registered products with no staging artifact -> retire (in-flight runs
   keep executing under their version, no new runs are admitted)

reconcile() is invoked on a poll interval by a background thread, or
immediately via notify() when a push notification arrives.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from productflow.errors import StagingError, ValidationError
from productflow.parser import compute_fingerprint, parse
from productflow.registry import GraphRegistry
from productflow.schemas import GraphModel, ProductPolicy
from productflow.staging import StagingStore, index_by_product

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 60.0


@dataclass
class SyncReport:
    """
    Outcome of one reconcile() pass.

    Attributes:
        registered: Graphs registered as new current versions
        unchanged: Products whose staged fingerprint did not change
        rejected: Products whose new definition failed validation
        retired: Products retired because their artifacts disappeared
        errors: Products (or "*" for the listing) that could not be read
    """
    registered: list[GraphModel] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    rejected: dict[str, ValidationError] = field(default_factory=dict)
    retired: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.registered or self.retired)

    def to_dict(self) -> dict:
        return {
            "registered": [f"{g.product_id}@v{g.version}" for g in self.registered],
            "unchanged": list(self.unchanged),
            "rejected": {p: str(e) for p, e in self.rejected.items()},
            "retired": list(self.retired),
            "errors": dict(self.errors),
        }


class SyncAgent:
    """
    Keeps the GraphRegistry in step with the staging store.

    Usage:
        agent = SyncAgent(store, registry, on_new_version=scheduler.on_graph_registered)
        agent.reconcile()          # one pass
        agent.start()              # poll every poll_interval_seconds
        agent.notify()             # reconcile now (push notification)
        agent.stop()
    """

    def __init__(
        self,
        store: StagingStore,
        registry: GraphRegistry,
        default_policy: Optional[ProductPolicy] = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_new_version: Optional[Callable[[GraphModel], None]] = None,
    ):
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._store = store
        self._registry = registry
        self._default_policy = default_policy or ProductPolicy()
        self._poll_interval = poll_interval_seconds
        self._on_new_version = on_new_version

        self._reconcile_lock = threading.Lock()
        # product -> fingerprint of the last definition that failed validation
        self._rejected: dict[str, str] = {}

        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SyncReport] = None

    @property
    def poll_interval_seconds(self) -> float:
        return self._poll_interval

    def reconcile(self) -> SyncReport:
        """
        Run one diff-and-apply pass.

        Never raises for staging or validation problems; they are logged and
        recorded in the returned SyncReport.
        """
        with self._reconcile_lock:
            report = self._reconcile()
        self.last_report = report
        return report

    def _reconcile(self) -> SyncReport:
        report = SyncReport()

        try:
            staged = index_by_product(self._store)
        except StagingError as e:
            # A failed listing must not be mistaken for deletions
            logger.error(f"Staging listing failed, skipping reconcile: {e}")
            report.errors["*"] = str(e)
            return report

        for product_id, key in staged.items():
            try:
                content = self._store.fetch(key)
            except StagingError as e:
                logger.error(f"Failed to fetch {key}: {e}")
                report.errors[product_id] = str(e)
                continue
            self._apply(product_id, key, content, report)

        snapshot = self._registry.snapshot()
        for product_id in snapshot.active_products():
            if product_id not in staged and product_id not in report.errors:
                if self._registry.retire(product_id):
                    report.retired.append(product_id)
        for product_id in list(self._rejected):
            if product_id not in staged:
                del self._rejected[product_id]

        if report.changed or report.rejected:
            logger.info(
                f"Sync: {len(report.registered)} registered, {len(report.rejected)} rejected, "
                f"{len(report.retired)} retired, {len(report.unchanged)} unchanged",
                extra={"event": "sync.completed", "metadata": report.to_dict()},
            )
        return report

    def _apply(self, product_id: str, key: str, content: bytes, report: SyncReport) -> None:
        fingerprint = compute_fingerprint(content)
        current = self._registry.current(product_id)
        retired = self._registry.is_retired(product_id)

        if current is not None and current.fingerprint == fingerprint and not retired:
            report.unchanged.append(product_id)
            return
        if self._rejected.get(product_id) == fingerprint:
            # Already reported; wait for the CI pipeline to stage a fix
            report.unchanged.append(product_id)
            return

        try:
            graph = parse(content, product_id=product_id, default_policy=self._default_policy)
        except ValidationError as e:
            self._rejected[product_id] = fingerprint
            report.rejected[product_id] = e
            kept = f"v{current.version}" if current is not None else "none"
            logger.error(
                f"Rejected definition {key}: {e} (current version kept: {kept})",
                extra={"event": "sync.rejected",
                       "metadata": {"product_id": product_id, "kind": e.kind, "key": key}},
            )
            return

        self._rejected.pop(product_id, None)
        registered = self._registry.register(graph)
        report.registered.append(registered)

        if self._on_new_version is not None:
            try:
                self._on_new_version(registered)
            except Exception as e:
                logger.warning(
                    f"New-version hook failed for {product_id} v{registered.version}: {e}"
                )

    # -- polling --------------------------------------------------------------

    def start(self) -> None:
        """Start the background poll loop (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="productflow-sync", daemon=True
        )
        self._thread.start()
        logger.info(f"Sync agent polling every {self._poll_interval}s")

    def notify(self) -> None:
        """Request an immediate reconcile (push notification path)."""
        self._wake.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the poll loop and wait for the thread to exit."""
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.reconcile()
            except Exception:
                logger.exception("Unexpected error during reconcile")
            self._wake.wait(self._poll_interval)
            self._wake.clear()
