import re

import pytest
import yaml
from click.testing import CliRunner

from productflow.cli import main
from productflow.run_store import FileRunStore
from productflow.schemas import RunStatus, TaskState


CALLABLES_MODULE = """\
def download(task, context):
    return None
"""

CLI_DEFINITION = """\
product_id: weather
tasks:
  - {id: download, config: {callable: "weather_cli_callables:download"}, outlets: [raw]}
  - {id: publish, config: {callable: "weather_cli_callables:download"}, upstream: [download]}
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def configured_home(isolated_home, tmp_path, monkeypatch):
    """A productflow home with local staging holding one product."""
    staging = isolated_home / "staging"
    staging.mkdir(parents=True)
    (staging / "weather.yaml").write_text(CLI_DEFINITION)
    (isolated_home / "config.yaml").write_text(yaml.safe_dump({
        "staging": {"type": "local", "path": str(staging)},
        "runs": {"store_path": str(isolated_home / "runs")},
        "dispatch": {"dispatch_backoff_seconds": 0},
        "logging": {"console": False, "output": None},
    }))

    callables_dir = tmp_path / "callables"
    callables_dir.mkdir()
    (callables_dir / "weather_cli_callables.py").write_text(CALLABLES_MODULE)
    monkeypatch.syspath_prepend(str(callables_dir))
    return isolated_home


def test_init_command_creates_files(runner, isolated_home):
    result = runner.invoke(main, ["init"])

    assert result.exit_code == 0
    assert "Initialized productflow config" in result.output
    assert (isolated_home / "config.yaml").exists()
    assert (isolated_home / ".env").exists()
    assert (isolated_home / "staging").is_dir()
    cfg = yaml.safe_load((isolated_home / "config.yaml").read_text())
    assert cfg["staging"]["type"] == "local"


def test_init_does_not_overwrite_without_force(runner, isolated_home):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init"])

    assert result.exit_code == 1
    assert "Config already exists" in result.output
    assert (isolated_home / "config.yaml").read_text() == "existing: true"


def test_init_force_overwrites(runner, isolated_home):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init", "--force"])

    assert result.exit_code == 0
    assert "staging" in yaml.safe_load((isolated_home / "config.yaml").read_text())


def test_validate_valid_definition(runner, tmp_path, weather_definition):
    path = tmp_path / "weather.yaml"
    path.write_bytes(weather_definition)

    result = runner.invoke(main, ["validate", str(path)])

    assert result.exit_code == 0
    assert "✓ weather: 3 task(s)" in result.output
    assert "download -> schema -> register" in result.output


def test_validate_reports_cycle(runner, tmp_path):
    path = tmp_path / "loop.yaml"
    path.write_text("product_id: loop\ntasks:\n  - {id: a, upstream: [b]}\n  - {id: b, upstream: [a]}\n")

    result = runner.invoke(main, ["validate", str(path)])

    assert result.exit_code == 1
    assert "CycleDetected" in result.output
    assert "cycle: " in result.output


def test_commands_require_config(runner):
    result = runner.invoke(main, ["products", "list"])

    assert result.exit_code == 1
    assert "Config not loaded" in result.output


def test_products_list(runner, configured_home):
    result = runner.invoke(main, ["products", "list"])

    assert result.exit_code == 0
    assert "weather" in result.output


def test_products_show(runner, configured_home):
    result = runner.invoke(main, ["products", "show", "weather"])

    assert result.exit_code == 0
    assert "Version: 1" in result.output
    assert '"fingerprint"' in result.output


def test_products_show_unknown(runner, configured_home):
    result = runner.invoke(main, ["products", "show", "climate"])

    assert result.exit_code == 1
    assert "Unknown product: climate" in result.output


def test_runs_trigger_wait_and_inspect(runner, configured_home):
    result = runner.invoke(main, ["runs", "trigger", "weather", "--wait", "--timeout", "10"])

    assert result.exit_code == 0, result.output
    assert "Status: succeeded" in result.output
    run_id = re.search(r"Run (\w+) triggered", result.output).group(1)

    stored = FileRunStore(configured_home / "runs").get_run(run_id)
    assert stored.status == RunStatus.SUCCEEDED

    status = runner.invoke(main, ["runs", "status", run_id])
    assert status.exit_code == 0
    assert f"Run: {run_id}" in status.output

    listing = runner.invoke(main, ["runs", "list", "--product", "weather"])
    assert listing.exit_code == 0
    assert "weather" in listing.output


def test_runs_trigger_without_wait_completes_run(runner, configured_home):
    result = runner.invoke(main, ["runs", "trigger", "weather"])

    assert result.exit_code == 0, result.output
    run_id = re.search(r"Run (\w+) triggered", result.output).group(1)
    assert f"Run {run_id} succeeded" in result.output

    stored = FileRunStore(configured_home / "runs").get_run(run_id)
    assert stored.status == RunStatus.SUCCEEDED
    assert stored.state_of("publish") == TaskState.SUCCEEDED


def test_runs_trigger_unknown_product(runner, configured_home):
    result = runner.invoke(main, ["runs", "trigger", "climate"])

    assert result.exit_code == 1
    assert "unknown_product" in result.output


def test_runs_status_unknown(runner, configured_home):
    result = runner.invoke(main, ["runs", "status", "01NOTARUN"])

    assert result.exit_code == 1
    assert "Run not found" in result.output


def test_runs_list_empty(runner, configured_home):
    result = runner.invoke(main, ["runs", "list"])

    assert result.exit_code == 0
    assert "No runs found." in result.output
