"""
Run schemas - per-task state and immutable run snapshots.

A Run is the only mutable entity in productflow and is owned exclusively
by the Scheduler. Everything in this module is a frozen snapshot: the
Scheduler builds a new one on every change, external readers never hold
a live reference.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .asset import Asset

# ULID type alias for documentation
ULID = str


class TaskState(str, Enum):
    """State of one task within one run."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UPSTREAM_FAILED = "upstream_failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATES


TERMINAL_TASK_STATES = frozenset({
    TaskState.SUCCEEDED,
    TaskState.FAILED,
    TaskState.UPSTREAM_FAILED,
    TaskState.SKIPPED,
})


class RunStatus(str, Enum):
    """Overall status of a run."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class TaskRun:
    """
    State of one task within one run.

    Attributes:
        task_id: Task identifier
        state: Current TaskState
        attempts: Attempts dispatched so far
        started_at: When the first attempt started
        finished_at: When the task reached a terminal state
        error: Last error message, if any
        logs_ref: Reference to the backend logs of the last attempt
        output_assets: Assets reported by the successful attempt
    """
    task_id: str
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    logs_ref: Optional[str] = None
    output_assets: frozenset[Asset] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "task_id": self.task_id,
            "state": self.state.value,
            "attempts": self.attempts,
        }
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.finished_at is not None:
            result["finished_at"] = self.finished_at.isoformat()
        if self.error is not None:
            result["error"] = self.error
        if self.logs_ref is not None:
            result["logs_ref"] = self.logs_ref
        if self.output_assets:
            result["output_assets"] = [
                a.to_dict() for a in sorted(self.output_assets, key=lambda a: a.name)
            ]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRun":
        """Deserialize from dictionary."""
        return cls(
            task_id=data["task_id"],
            state=TaskState(data["state"]),
            attempts=data.get("attempts", 0),
            started_at=_dt(data.get("started_at")),
            finished_at=_dt(data.get("finished_at")),
            error=data.get("error"),
            logs_ref=data.get("logs_ref"),
            output_assets=frozenset(Asset.from_dict(a) for a in data.get("output_assets", [])),
        )


@dataclass(frozen=True)
class Run:
    """
    Immutable snapshot of a run.

    Attributes:
        run_id: ULID uniquely identifying this run
        product_id: Product the run belongs to
        graph_version: Version of the GraphModel being executed
        task_states: Mapping of task id to TaskRun
        status: Overall RunStatus
        reason: Why the run was created ("manual", "change", ...)
        created_at: When the trigger was admitted
        started_at: When the first readiness evaluation happened (None while queued)
        finished_at: Set iff every task is terminal
    """
    run_id: ULID
    product_id: str
    graph_version: int
    task_states: Mapping[str, TaskRun]
    status: RunStatus = RunStatus.QUEUED
    reason: str = "manual"
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        object.__setattr__(self, "task_states", MappingProxyType(dict(self.task_states)))

    def state_of(self, task_id: str) -> TaskState:
        return self.task_states[task_id].state

    @property
    def is_terminal(self) -> bool:
        return self.finished_at is not None

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate run duration in milliseconds if finished."""
        if self.started_at and self.finished_at:
            delta = self.finished_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "product_id": self.product_id,
            "graph_version": self.graph_version,
            "status": self.status.value,
            "reason": self.reason,
            "task_states": {tid: tr.to_dict() for tid, tr in self.task_states.items()},
        }
        if self.created_at is not None:
            result["created_at"] = self.created_at.isoformat()
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.finished_at is not None:
            result["finished_at"] = self.finished_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Run":
        """Deserialize from dictionary."""
        return cls(
            run_id=data["run_id"],
            product_id=data["product_id"],
            graph_version=data["graph_version"],
            task_states={
                tid: TaskRun.from_dict(tr) for tid, tr in data.get("task_states", {}).items()
            },
            status=RunStatus(data.get("status", "queued")),
            reason=data.get("reason", "manual"),
            created_at=_dt(data.get("created_at")),
            started_at=_dt(data.get("started_at")),
            finished_at=_dt(data.get("finished_at")),
        )
