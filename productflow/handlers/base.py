"""
Base executor protocol and common implementations.

Executors run one attempt of a TaskDescriptor and report a uniform
Completion. One executor variant exists per TaskKind:
- inline: callable in the scheduling process (InlineExecutor)
- container_local: local container runtime (LocalContainerExecutor)
- container_cluster: cluster backend with submit/poll/cancel (ClusterExecutor)

Error handling contract:
- DispatchError: the backend could not start the task (retried by DispatchRegistry)
- TaskTimeoutError: the attempt exceeded its deadline
- Any other exception or a failure Completion: task logic failure
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol, runtime_checkable

from productflow.schemas import Asset, Completion, TaskDescriptor


@dataclass(frozen=True)
class RunContext:
    """
    Per-attempt context handed to an executor.

    Attributes:
        run_id: Run the attempt belongs to
        product_id: Product of the run
        graph_version: GraphModel version being executed
        attempt: 1-indexed attempt number of the task
        deadline: time.monotonic() value after which the attempt is timed out
        cancel_event: Set when the run is cancelled or the attempt timed out
    """
    run_id: str
    product_id: str
    graph_version: int
    attempt: int = 1
    deadline: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (None if unbounded, never negative)."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@runtime_checkable
class Executor(Protocol):
    """
    Protocol for execution backends.

    Implementations run a single attempt and either return a Completion
    or raise (see module docstring for classification).
    """

    def execute(self, task: TaskDescriptor, context: RunContext) -> Completion:
        ...


def declared_assets(task: TaskDescriptor, names: Optional[Iterable[str]] = None) -> frozenset[Asset]:
    """
    Build Asset references for a task's outlets.

    Args:
        task: Producing task
        names: Subset of outlet names actually produced (default: all outlets)
    """
    selected = task.outlets if names is None else frozenset(names)
    return frozenset(
        Asset(name=name, producing_task_id=task.id, schema_hint=task.outlet_hints.get(name))
        for name in selected
    )


class NoOpExecutor:
    """
    No-op executor for testing and dry-run mode.

    Reports success with every declared outlet without executing anything.
    """

    def execute(self, task: TaskDescriptor, context: RunContext) -> Completion:
        return Completion.success(declared_assets(task), logs_ref=f"noop:{context.run_id}/{task.id}")
