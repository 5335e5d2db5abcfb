"""
Configuration management for productflow.

Loads config.yaml from the productflow home directory
($PRODUCTFLOW_HOME, default ~/.config/productflow). An optional env_file
is loaded into the process environment before values are read, so
secrets such as MinIO credentials can stay out of the YAML file.
"""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from productflow.errors import ConfigError
from productflow.schemas import AdmissionPolicy, ProductPolicy

STAGING_TYPES = ("local", "minio", "memory")
LINEAGE_TYPES = ("memory", "bigquery")
LOG_FORMATS = ("structured", "pretty")


def get_productflow_home() -> Path:
    """Return the productflow home directory."""
    env = os.environ.get("PRODUCTFLOW_HOME")
    if env:
        return Path(env).expanduser()
    return Path("~/.config/productflow").expanduser()


@dataclass
class StagingConfig:
    type: str = "local"
    path: str = "~/.config/productflow/staging"
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = "definitions/"
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    secure: bool = True


@dataclass
class SyncConfig:
    poll_interval_seconds: float = 60.0


@dataclass
class SchedulerConfig:
    max_workers: int = 8
    default_admission: str = "queue"
    default_run_on_change: bool = False
    max_concurrent_runs: int = 1


@dataclass
class DispatchConfig:
    max_dispatch_attempts: int = 3
    dispatch_backoff_seconds: float = 1.0
    cluster_poll_interval_seconds: float = 5.0


@dataclass
class LineageConfig:
    type: str = "memory"
    project: Optional[str] = None
    dataset: str = "lineage"
    table: str = "lineage_edges"
    retry_interval_seconds: float = 30.0
    max_attempts: int = 5


@dataclass
class RunsConfig:
    store_path: Optional[str] = "~/.config/productflow/runs"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "structured"
    console: bool = True
    output: Optional[str] = None


@dataclass
class ProductflowConfig:
    """Complete productflow configuration."""
    staging: StagingConfig = field(default_factory=StagingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    lineage: LineageConfig = field(default_factory=LineageConfig)
    runs: RunsConfig = field(default_factory=RunsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    env_file: Optional[str] = None

    def default_policy(self) -> ProductPolicy:
        """Product policy applied when a definition does not set one."""
        return ProductPolicy(
            admission=AdmissionPolicy(self.scheduler.default_admission),
            run_on_change=self.scheduler.default_run_on_change,
            max_concurrent_runs=self.scheduler.max_concurrent_runs,
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: On the first invalid value found
        """
        if self.staging.type not in STAGING_TYPES:
            raise ConfigError(f"staging.type must be one of {STAGING_TYPES}, got '{self.staging.type}'")
        if self.staging.type == "minio" and not (self.staging.endpoint and self.staging.bucket):
            raise ConfigError("staging.endpoint and staging.bucket are required for minio staging")
        if self.sync.poll_interval_seconds <= 0:
            raise ConfigError("sync.poll_interval_seconds must be > 0")
        if self.scheduler.max_workers < 1:
            raise ConfigError("scheduler.max_workers must be >= 1")
        if self.scheduler.default_admission not in [p.value for p in AdmissionPolicy]:
            raise ConfigError(
                f"scheduler.default_admission must be 'queue' or 'reject', "
                f"got '{self.scheduler.default_admission}'"
            )
        if self.scheduler.max_concurrent_runs < 1:
            raise ConfigError("scheduler.max_concurrent_runs must be >= 1")
        if self.dispatch.max_dispatch_attempts < 1:
            raise ConfigError("dispatch.max_dispatch_attempts must be >= 1")
        if self.lineage.type not in LINEAGE_TYPES:
            raise ConfigError(f"lineage.type must be one of {LINEAGE_TYPES}, got '{self.lineage.type}'")
        if self.lineage.type == "bigquery" and not self.lineage.project:
            raise ConfigError("lineage.project is required for bigquery lineage")
        if self.lineage.max_attempts < 1:
            raise ConfigError("lineage.max_attempts must be >= 1")
        if self.logging.format not in LOG_FORMATS:
            raise ConfigError(f"logging.format must be one of {LOG_FORMATS}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProductflowConfig":
        """
        Build a config from a parsed YAML mapping.

        Raises:
            ConfigError: On unknown sections/keys or invalid values
        """
        sections = {
            "staging": StagingConfig,
            "sync": SyncConfig,
            "scheduler": SchedulerConfig,
            "dispatch": DispatchConfig,
            "lineage": LineageConfig,
            "runs": RunsConfig,
            "logging": LoggingConfig,
        }
        kwargs: dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key == "env_file":
                kwargs["env_file"] = value
                continue
            if key not in sections:
                raise ConfigError(f"Unknown config section: {key}")
            if not isinstance(value, dict):
                raise ConfigError(f"Config section '{key}' must be a mapping")
            try:
                kwargs[key] = sections[key](**value)
            except TypeError as e:
                raise ConfigError(f"Invalid keys in section '{key}': {e}")

        config = cls(**kwargs)
        _apply_env_overrides(config)
        config.validate()
        return config


def _apply_env_overrides(config: ProductflowConfig) -> None:
    """Fill staging credentials from the environment when the file leaves them unset."""
    if config.staging.access_key is None:
        config.staging.access_key = os.environ.get("PRODUCTFLOW_STAGING_ACCESS_KEY")
    if config.staging.secret_key is None:
        config.staging.secret_key = os.environ.get("PRODUCTFLOW_STAGING_SECRET_KEY")
    if config.lineage.project is None:
        config.lineage.project = os.environ.get("GOOGLE_CLOUD_PROJECT")


def load_config(config_path: Optional[Path] = None) -> ProductflowConfig:
    """
    Load productflow configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml

    Returns:
        ProductflowConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_productflow_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"productflow config.yaml not found at {config_path}. Run 'productflow init'."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    return ProductflowConfig.from_dict(data)


def default_config_dict(home: Path) -> dict[str, Any]:
    """Configuration written by `productflow init`."""
    config = ProductflowConfig(
        staging=StagingConfig(type="local", path=str(home / "staging")),
        runs=RunsConfig(store_path=str(home / "runs")),
        logging=LoggingConfig(output=str(home / "logs" / "productflow.log")),
        env_file=str(home / ".env"),
    )
    return config.to_dict()
