"""
Executors for the three task kinds and the registry that routes to them.
"""

from productflow.handlers.base import Executor, NoOpExecutor, RunContext, declared_assets
from productflow.handlers.cluster import ClusterBackend, ClusterExecutor
from productflow.handlers.container import (
    ContainerResult,
    ContainerRuntime,
    DockerCliRuntime,
    LocalContainerExecutor,
)
from productflow.handlers.inline import InlineExecutor
from productflow.handlers.registry import DispatchRegistry

__all__ = [
    "Executor",
    "NoOpExecutor",
    "RunContext",
    "declared_assets",
    "ClusterBackend",
    "ClusterExecutor",
    "ContainerResult",
    "ContainerRuntime",
    "DockerCliRuntime",
    "LocalContainerExecutor",
    "InlineExecutor",
    "DispatchRegistry",
]
