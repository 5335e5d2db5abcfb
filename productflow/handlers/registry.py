"""
Dispatch Registry for routing ready tasks to execution backends.

The registry maps TaskKind to its Executor and is the dispatch boundary
where exceptions become Completions:
- DispatchError: retried here up to max_dispatch_attempts with a fixed
  backoff, then surfaced as a transient failure Completion
- TaskTimeoutError: transient failure Completion (subject to task retry policy)
- Anything else: task logic failure Completion
"""

import logging
from typing import Optional

from productflow.errors import DispatchError, TaskTimeoutError
from productflow.handlers.base import Executor, NoOpExecutor, RunContext
from productflow.handlers.cluster import ClusterBackend, ClusterExecutor, DEFAULT_POLL_INTERVAL_SECONDS
from productflow.handlers.container import ContainerRuntime, LocalContainerExecutor
from productflow.handlers.inline import InlineExecutor
from productflow.schemas import Completion, TaskDescriptor, TaskKind
from productflow.utils import retry_with_backoff, sanitize_error_message

logger = logging.getLogger(__name__)

DEFAULT_MAX_DISPATCH_ATTEMPTS = 3
DEFAULT_DISPATCH_BACKOFF_SECONDS = 1.0


class DispatchRegistry:
    """
    Registry for executor dispatch by task kind.

    Usage:
        registry = DispatchRegistry()
        registry.register(TaskKind.INLINE, InlineExecutor())

        completion = registry.dispatch(task, context)

        # Or use factory with defaults
        registry = DispatchRegistry.create_default(cluster_backend=backend)
    """

    def __init__(
        self,
        max_dispatch_attempts: int = DEFAULT_MAX_DISPATCH_ATTEMPTS,
        dispatch_backoff_seconds: float = DEFAULT_DISPATCH_BACKOFF_SECONDS,
    ) -> None:
        if max_dispatch_attempts < 1:
            raise ValueError("max_dispatch_attempts must be >= 1")
        self.max_dispatch_attempts = max_dispatch_attempts
        self.dispatch_backoff_seconds = dispatch_backoff_seconds
        self._executors: dict[TaskKind, Executor] = {}

    def register(self, kind: TaskKind, executor: Executor) -> None:
        """
        Register an executor for a task kind.

        Args:
            kind: TaskKind handled by the executor
            executor: Executor instance
        """
        self._executors[TaskKind(kind)] = executor

    def get(self, kind: TaskKind) -> Executor:
        """
        Get the executor for a task kind.

        Raises:
            KeyError: If no executor is registered for this kind
        """
        if kind not in self._executors:
            registered = [k.value for k in self._executors]
            raise KeyError(f"No executor registered for kind: {kind.value}. Registered: {registered}")
        return self._executors[kind]

    def has(self, kind: TaskKind) -> bool:
        return kind in self._executors

    def list_kinds(self) -> list[str]:
        return [k.value for k in self._executors]

    def dispatch(self, task: TaskDescriptor, context: RunContext) -> Completion:
        """
        Execute one attempt of a task and return its Completion.

        Never raises for execution problems; see module docstring.
        """
        if not self.has(task.kind):
            return Completion.failure(f"No executor registered for kind: {task.kind.value}")
        executor = self._executors[task.kind]

        try:
            completion = retry_with_backoff(
                lambda: executor.execute(task, context),
                max_attempts=self.max_dispatch_attempts,
                backoff_seconds=self.dispatch_backoff_seconds,
                backoff_multiplier=1.0,
                retry_on=(DispatchError,),
                logger=logger,
                sleep=context.cancel_event.wait,
            )
        except (DispatchError, TaskTimeoutError) as e:
            return Completion.failure(sanitize_error_message(e), transient=True)
        except Exception as e:
            logger.debug(f"Task {context.run_id}/{task.id} raised", exc_info=True)
            return Completion.failure(sanitize_error_message(e))

        if not isinstance(completion, Completion):
            return Completion.failure(
                f"executor returned {type(completion).__name__}, expected Completion"
            )
        return _restrict_to_outlets(task, completion)

    @classmethod
    def create_default(
        cls,
        inline: Optional[InlineExecutor] = None,
        container_runtime: Optional[ContainerRuntime] = None,
        cluster_backend: Optional[ClusterBackend] = None,
        cluster_poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_dispatch_attempts: int = DEFAULT_MAX_DISPATCH_ATTEMPTS,
        dispatch_backoff_seconds: float = DEFAULT_DISPATCH_BACKOFF_SECONDS,
    ) -> "DispatchRegistry":
        """
        Create a registry with the default executors.

        container_cluster is only registered when a cluster backend is
        provided; its tasks otherwise fail with a missing-executor error.
        """
        registry = cls(max_dispatch_attempts, dispatch_backoff_seconds)
        registry.register(TaskKind.INLINE, inline or InlineExecutor())
        registry.register(TaskKind.CONTAINER_LOCAL, LocalContainerExecutor(container_runtime))
        if cluster_backend is not None:
            registry.register(
                TaskKind.CONTAINER_CLUSTER,
                ClusterExecutor(cluster_backend, poll_interval_seconds=cluster_poll_interval_seconds),
            )
        return registry

    @classmethod
    def create_noop(cls) -> "DispatchRegistry":
        """
        Create a registry with NoOp executors for every kind.

        Useful for testing and dry-run mode.
        """
        registry = cls(max_dispatch_attempts=1, dispatch_backoff_seconds=0.0)
        for kind in TaskKind:
            registry.register(kind, NoOpExecutor())
        return registry


def _restrict_to_outlets(task: TaskDescriptor, completion: Completion) -> Completion:
    """Drop reported assets the task does not declare as outlets."""
    undeclared = {a.name for a in completion.output_assets} - task.outlets
    if not undeclared:
        return completion
    logger.warning(f"Task {task.id} reported undeclared assets {sorted(undeclared)}; ignoring them")
    return Completion(
        status=completion.status,
        output_assets=frozenset(a for a in completion.output_assets if a.name in task.outlets),
        logs_ref=completion.logs_ref,
        error=completion.error,
        transient=completion.transient,
    )
