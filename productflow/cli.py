"""
CLI interface for productflow.

Provides commands to validate definitions, synchronize the staging store,
inspect registered products, and trigger and inspect runs.

Definitions are YAML documents staged by CI under the configured staging
store (a local directory, MinIO bucket or in-memory store).
"""

import json
import time
from pathlib import Path

import click
from rich.table import Table

from productflow import __version__
from productflow.utils import console


@click.group()
@click.version_option(version=__version__, prog_name="productflow")
@click.pass_context
def main(ctx):
    """
    productflow - Data product orchestration core.

    Sync task-graph definitions from staging storage and run them.
    """
    from productflow.config import load_config
    from productflow.errors import ConfigError

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except (FileNotFoundError, ConfigError) as e:
        # init and validate work without a config
        ctx.obj["config_error"] = str(e)


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'productflow init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _build_orchestrator(ctx, run_on_change: bool = True):
    from productflow.orchestrator import Orchestrator
    from productflow.utils import setup_logging

    config = _require_config(ctx)
    setup_logging(
        log_file=Path(config.logging.output).expanduser() if config.logging.output else None,
        log_level=config.logging.level,
        log_format=config.logging.format,
        console_output=config.logging.console,
    )
    return Orchestrator.from_config(config, run_on_change=run_on_change)


def _synced_registry(ctx):
    """Reconcile staging into a fresh registry without scheduling anything."""
    from productflow.orchestrator import build_staging_store
    from productflow.registry import GraphRegistry
    from productflow.sync_agent import SyncAgent

    config = _require_config(ctx)
    registry = GraphRegistry()
    agent = SyncAgent(build_staging_store(config.staging), registry, default_policy=config.default_policy())
    report = agent.reconcile()
    for product_id, error in {**report.rejected, **report.errors}.items():
        click.echo(f"✗ {product_id}: {error}", err=True)
    return registry


def _run_store(ctx):
    from productflow.run_store import FileRunStore

    config = _require_config(ctx)
    if not config.runs.store_path:
        click.echo("✗ runs.store_path is not configured; run history is not persisted", err=True)
        raise SystemExit(1)
    return FileRunStore(Path(config.runs.store_path).expanduser())


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize productflow configuration."""
    import yaml

    from productflow.config import default_config_dict, get_productflow_home

    home = get_productflow_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = default_config_dict(home)
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))
    Path(default_cfg["staging"]["path"]).mkdir(parents=True, exist_ok=True)

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# PRODUCTFLOW_STAGING_ACCESS_KEY=...\n"
            "# PRODUCTFLOW_STAGING_SECRET_KEY=...\n"
            "# GOOGLE_CLOUD_PROJECT=...\n"
        )

    click.echo(f"Initialized productflow config at {cfg_path}")


@main.command("validate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(file: Path):
    """Validate a definition file without registering it."""
    from productflow.errors import ValidationError
    from productflow.parser import parse
    from productflow.staging import product_path_for

    try:
        graph = parse(file.read_bytes(), product_id=product_path_for(file.name))
    except ValidationError as e:
        click.echo(f"✗ {file}: {e}", err=True)
        if e.cycle:
            click.echo(f"  cycle: {' -> '.join(e.cycle + (e.cycle[0],))}", err=True)
        raise SystemExit(1)

    click.echo(f"✓ {graph.product_id}: {len(graph.tasks)} task(s)")
    click.echo(f"  order: {' -> '.join(graph.order)}")
    click.echo(f"  fingerprint: {graph.fingerprint}")


@main.command("sync")
@click.option("--once", is_flag=True, help="Run a single reconcile pass and exit")
@click.pass_context
def sync(ctx, once: bool):
    """Reconcile staged definitions with the registry."""
    orchestrator = _build_orchestrator(ctx)
    if once:
        report = orchestrator.sync_once()
        _print_sync_report(report)
        orchestrator.stop()
        if report.rejected or report.errors:
            raise SystemExit(1)
        return

    orchestrator.sync_agent.start()
    click.echo(f"Polling staging every {orchestrator.sync_agent.poll_interval_seconds}s (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        orchestrator.stop(cancel_running=True)


@main.command("serve")
@click.pass_context
def serve(ctx):
    """Run the sync agent, scheduler and lineage retries until interrupted."""
    orchestrator = _build_orchestrator(ctx)
    orchestrator.start()
    click.echo("productflow serving (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("Shutting down, cancelling running runs...")
    finally:
        orchestrator.stop(cancel_running=True)


def _print_sync_report(report) -> None:
    for graph in report.registered:
        click.echo(f"✓ registered {graph.product_id} v{graph.version}")
    for product_id in report.retired:
        click.echo(f"- retired {product_id}")
    for product_id, error in report.rejected.items():
        click.echo(f"✗ rejected {product_id}: {error}", err=True)
    for product_id, error in report.errors.items():
        click.echo(f"✗ error {product_id}: {error}", err=True)
    if not report.changed and not report.rejected and not report.errors:
        click.echo(f"No changes ({len(report.unchanged)} unchanged)")


# =============================================================================
# Products
# =============================================================================

@main.group("products")
def products_group():
    """Inspect registered data products."""
    pass


@products_group.command("list")
@click.pass_context
def list_products(ctx):
    """List products found in staging."""
    registry = _synced_registry(ctx)
    product_ids = registry.list_products()
    if not product_ids:
        click.echo("No products registered.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Product", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("Tasks", justify="right")
    table.add_column("Admission")
    table.add_column("Run on change")
    for product_id in product_ids:
        graph = registry.current(product_id)
        table.add_row(
            product_id,
            str(graph.version),
            str(len(graph.tasks)),
            graph.policy.admission.value,
            "yes" if graph.policy.run_on_change else "no",
        )
    console.print(table)


@products_group.command("show")
@click.argument("product")
@click.pass_context
def show_product(ctx, product: str):
    """Show the current graph of a product."""
    graph = _synced_registry(ctx).current(product)
    if graph is None:
        click.echo(f"✗ Unknown product: {product}", err=True)
        raise SystemExit(1)
    click.echo(f"Product: {graph.product_id}")
    click.echo(f"Version: {graph.version}")
    click.echo()
    click.echo(json.dumps(graph.to_dict(), indent=2))


# =============================================================================
# Runs
# =============================================================================

@main.group("runs")
def runs_group():
    """Trigger and inspect runs."""
    pass


@runs_group.command("trigger")
@click.argument("product")
@click.option("--wait", is_flag=True, help="Print the finished run and exit non-zero unless it succeeded")
@click.option("--timeout", type=float, default=None, help="Maximum seconds to wait")
@click.pass_context
def trigger_run(ctx, product: str, wait: bool, timeout: float | None):
    """
    Trigger a run of a product's current version.

    The run executes in this process, so the command returns once it has
    finished. If --timeout elapses first the run is cancelled.
    """
    from productflow.errors import AdmissionRejected
    from productflow.schemas import RunStatus

    orchestrator = _build_orchestrator(ctx, run_on_change=False)
    try:
        orchestrator.sync_once()
        try:
            run_id = orchestrator.trigger_run(product)
        except AdmissionRejected as e:
            click.echo(f"✗ {e}", err=True)
            raise SystemExit(1)

        click.echo(f"Run {run_id} triggered for {product}")
        run = orchestrator.wait_for_run(run_id, timeout=timeout)
        if run.finished_at is None:
            orchestrator.cancel_run(run_id)
            click.echo(f"✗ Run {run_id} did not finish within {timeout}s, cancelled", err=True)
            raise SystemExit(1)
        if not wait:
            click.echo(f"Run {run_id} {run.status.value}")
            return
        _print_run(run)
        if run.status != RunStatus.SUCCEEDED:
            raise SystemExit(1)
    finally:
        orchestrator.stop()


@runs_group.command("status")
@click.argument("run_id")
@click.pass_context
def run_status(ctx, run_id: str):
    """Show the persisted state of a run."""
    run = _run_store(ctx).get_run(run_id)
    if run is None:
        click.echo(f"✗ Run not found: {run_id}", err=True)
        raise SystemExit(1)
    _print_run(run)


@runs_group.command("list")
@click.option("--product", default=None, help="Filter by product")
@click.pass_context
def list_runs(ctx, product: str | None):
    """List persisted runs."""
    runs = _run_store(ctx).list_runs(product)
    if not runs:
        click.echo("No runs found.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Run", style="cyan")
    table.add_column("Product")
    table.add_column("Version", justify="right")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Duration", justify="right")
    for run in runs:
        duration = f"{run.duration_ms / 1000:.1f}s" if run.duration_ms is not None else "-"
        table.add_row(
            run.run_id, run.product_id, str(run.graph_version),
            run.status.value, run.reason, duration,
        )
    console.print(table)


def _print_run(run) -> None:
    click.echo(f"Run: {run.run_id}")
    click.echo(f"Product: {run.product_id} v{run.graph_version}")
    click.echo(f"Status: {run.status.value}")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Task", style="cyan")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Outputs")
    table.add_column("Error")
    for task_id, task_run in run.task_states.items():
        table.add_row(
            task_id,
            task_run.state.value,
            str(task_run.attempts),
            ", ".join(sorted(a.name for a in task_run.output_assets)),
            task_run.error or "",
        )
    console.print(table)


if __name__ == "__main__":
    main()
