"""
Orchestrator - wires the registry, sync agent, scheduler, dispatch and lineage.

Control flow:
    CI pipeline -> staging store -> SyncAgent.reconcile() -> GraphRegistry
    -> Scheduler.on_graph_registered() / trigger_run() -> DispatchRegistry
    -> Completion -> LineageRegistrar + downstream readiness

Usage:
    config = load_config()
    with Orchestrator.from_config(config, inline_callables={"download": download}) as orch:
        orch.sync_once()
        run_id = orch.trigger_run("weather")
        orch.wait_for_run(run_id)
"""

import logging
from pathlib import Path
from typing import Any, Optional

from productflow.config import LineageConfig, ProductflowConfig, StagingConfig
from productflow.handlers import ClusterBackend, ContainerRuntime, DispatchRegistry, InlineExecutor
from productflow.handlers.inline import InlineCallable
from productflow.lineage import InMemoryLineageStore, LineageRegistrar, LineageStore
from productflow.registry import GraphRegistry
from productflow.run_store import FileRunStore, InMemoryRunStore, RunStore
from productflow.scheduler import Scheduler
from productflow.schemas import Run
from productflow.staging import InMemoryStagingStore, LocalStagingStore, StagingStore
from productflow.sync_agent import SyncAgent, SyncReport

logger = logging.getLogger(__name__)


def build_staging_store(config: StagingConfig, minio_client: Any = None) -> StagingStore:
    """Create the staging store named by the config."""
    if config.type == "memory":
        return InMemoryStagingStore()
    if config.type == "minio":
        from productflow.staging.minio_store import MinioStagingStore

        return MinioStagingStore(
            endpoint=config.endpoint,
            bucket=config.bucket,
            prefix=config.prefix,
            access_key=config.access_key,
            secret_key=config.secret_key,
            secure=config.secure,
            client=minio_client,
        )
    return LocalStagingStore(config.path)


def build_lineage_store(config: LineageConfig, bq_client: Any = None) -> LineageStore:
    """Create the lineage store named by the config."""
    if config.type == "bigquery":
        from google.cloud import bigquery

        from productflow.lineage.bigquery_store import BigQueryLineageStore

        client = bq_client or bigquery.Client(project=config.project)
        return BigQueryLineageStore(client, f"{config.project}.{config.dataset}.{config.table}")
    return InMemoryLineageStore()


class Orchestrator:
    """
    Facade over the orchestration core.

    Components are exposed as attributes for callers that need more than
    the facade methods.
    """

    def __init__(
        self,
        registry: GraphRegistry,
        sync_agent: SyncAgent,
        scheduler: Scheduler,
        lineage: LineageRegistrar,
        inline: InlineExecutor,
    ):
        self.registry = registry
        self.sync_agent = sync_agent
        self.scheduler = scheduler
        self.lineage = lineage
        self.inline = inline

    @classmethod
    def from_config(
        cls,
        config: ProductflowConfig,
        inline_callables: Optional[dict[str, InlineCallable]] = None,
        container_runtime: Optional[ContainerRuntime] = None,
        cluster_backend: Optional[ClusterBackend] = None,
        staging_store: Optional[StagingStore] = None,
        lineage_store: Optional[LineageStore] = None,
        run_store: Optional[RunStore] = None,
        run_on_change: bool = True,
    ) -> "Orchestrator":
        """
        Build an orchestrator from configuration.

        Explicit collaborators override what the config would create.
        With run_on_change=False newly registered versions never trigger
        runs, whatever their product policy says.
        """
        registry = GraphRegistry()
        inline = InlineExecutor(inline_callables)
        dispatch = DispatchRegistry.create_default(
            inline=inline,
            container_runtime=container_runtime,
            cluster_backend=cluster_backend,
            cluster_poll_interval_seconds=config.dispatch.cluster_poll_interval_seconds,
            max_dispatch_attempts=config.dispatch.max_dispatch_attempts,
            dispatch_backoff_seconds=config.dispatch.dispatch_backoff_seconds,
        )
        lineage = LineageRegistrar(
            lineage_store or build_lineage_store(config.lineage),
            retry_interval_seconds=config.lineage.retry_interval_seconds,
            max_attempts=config.lineage.max_attempts,
        )
        if run_store is None:
            if config.runs.store_path:
                run_store = FileRunStore(Path(config.runs.store_path).expanduser())
            else:
                run_store = InMemoryRunStore()

        scheduler = Scheduler(
            registry,
            dispatch,
            lineage=lineage,
            run_store=run_store,
            max_workers=config.scheduler.max_workers,
        )
        sync_agent = SyncAgent(
            staging_store or build_staging_store(config.staging),
            registry,
            default_policy=config.default_policy(),
            poll_interval_seconds=config.sync.poll_interval_seconds,
            on_new_version=scheduler.on_graph_registered if run_on_change else None,
        )
        return cls(registry, sync_agent, scheduler, lineage, inline)

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        """Start background sync polling and lineage retries."""
        self.lineage.start()
        self.sync_agent.start()
        logger.info("Orchestrator started")

    def stop(self, wait: bool = True, cancel_running: bool = False) -> None:
        """
        Stop syncing and shut the scheduler down.

        Running runs finish first unless cancel_running is set, in which
        case their remaining tasks are skipped.
        """
        self.sync_agent.stop()
        self.scheduler.shutdown(wait=wait, cancel_running=cancel_running)
        self.lineage.stop()
        logger.info("Orchestrator stopped")

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # -- facade -------------------------------------------------------------------

    def sync_once(self) -> SyncReport:
        return self.sync_agent.reconcile()

    def trigger_run(self, product_id: str, reason: str = "manual") -> str:
        return self.scheduler.trigger_run(product_id, reason=reason)

    def cancel_run(self, run_id: str) -> bool:
        return self.scheduler.cancel_run(run_id)

    def get_run_status(self, run_id: str) -> Run:
        return self.scheduler.get_run_status(run_id)

    def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> Run:
        return self.scheduler.wait_for_run(run_id, timeout=timeout)

    def list_runs(self, product_id: Optional[str] = None) -> list[Run]:
        return self.scheduler.list_runs(product_id)
