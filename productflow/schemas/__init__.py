"""
productflow.schemas - Schema definitions for the orchestration core.

Lifecycle:
1. TaskDescriptor / GraphModel: parsed from a staged definition, immutable, versioned
2. Run / TaskRun: runtime snapshots owned by the Scheduler
3. Completion: uniform result of one dispatched attempt
4. Asset / LineageEdge: produced artifacts and their recorded relationships
"""

from .asset import Asset
from .task import (
    BackoffPolicy,
    BackoffStrategy,
    TaskDescriptor,
    TaskKind,
)
from .graph import (
    AdmissionPolicy,
    GraphModel,
    ProductPolicy,
)
from .run import (
    Run,
    RunStatus,
    TaskRun,
    TaskState,
    TERMINAL_TASK_STATES,
    ULID,
)
from .completion import (
    Completion,
    CompletionStatus,
)
from .lineage import (
    LineageEdge,
    asset_node,
    task_node,
)

__all__ = [
    # Assets
    "Asset",
    # Tasks
    "BackoffPolicy",
    "BackoffStrategy",
    "TaskDescriptor",
    "TaskKind",
    # Graph
    "AdmissionPolicy",
    "GraphModel",
    "ProductPolicy",
    # Runs
    "Run",
    "RunStatus",
    "TaskRun",
    "TaskState",
    "TERMINAL_TASK_STATES",
    "ULID",
    # Completion
    "Completion",
    "CompletionStatus",
    # Lineage
    "LineageEdge",
    "asset_node",
    "task_node",
]
