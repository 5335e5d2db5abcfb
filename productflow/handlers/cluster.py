"""
Cluster container executor.

Tasks of kind `container_cluster` are submitted to a cluster execution
backend (Kubernetes jobs, Batch, ...). The task's config is the submission
spec; the executor polls until the job reaches a terminal status, the
attempt deadline passes, or the run is cancelled.

Only submission failures raise DispatchError. Once a job has been
submitted, poll failures are retried inside the poll loop; if they persist
the job is cancelled and the attempt fails, so a retried dispatch never
leaves an earlier job running.
"""

import logging
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from productflow.errors import DispatchError, TaskTimeoutError
from productflow.handlers.base import RunContext, declared_assets
from productflow.schemas import Completion, TaskDescriptor

logger = logging.getLogger(__name__)

CLUSTER_SUCCEEDED = "succeeded"
CLUSTER_FAILED = "failed"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_ERRORS = 3


@runtime_checkable
class ClusterBackend(Protocol):
    """
    Protocol for cluster execution backends.

    Backends raise DispatchError (or OSError/ConnectionError) when the
    cluster API cannot be reached.
    """

    def submit(self, spec: Mapping[str, Any]) -> str:
        """Submit a job and return an opaque handle."""
        ...

    def poll(self, handle: str) -> str:
        """Return the job status: pending, running, succeeded or failed."""
        ...

    def cancel(self, handle: str) -> None:
        ...


class ClusterExecutor:
    """
    Executor for container_cluster tasks.

    Polling waits on the context's cancel_event, so cancellation and
    timeouts interrupt the wait immediately.
    """

    def __init__(
        self,
        backend: ClusterBackend,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_errors: int = DEFAULT_MAX_POLL_ERRORS,
    ):
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if max_poll_errors < 1:
            raise ValueError("max_poll_errors must be >= 1")
        self.backend = backend
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_errors = max_poll_errors

    def execute(self, task: TaskDescriptor, context: RunContext) -> Completion:
        spec = dict(task.config)
        spec.setdefault("labels", {})
        spec["labels"] = {
            **dict(spec["labels"]),
            "productflow/run_id": context.run_id,
            "productflow/task_id": task.id,
            "productflow/attempt": str(context.attempt),
        }

        try:
            handle = self.backend.submit(spec)
        except (OSError, ConnectionError) as e:
            raise DispatchError(task.id, f"cluster submit failed: {e}", cause=e)
        logs_ref = f"cluster:{handle}"
        logger.info(f"Submitted {context.run_id}/{task.id} as {handle}")

        poll_errors = 0
        while True:
            if context.cancelled:
                self._cancel(handle)
                return Completion.failure("cancelled", logs_ref=logs_ref)
            if context.expired:
                self._cancel(handle)
                raise TaskTimeoutError(task.id, task.timeout_seconds or 0.0)

            try:
                status = self.backend.poll(handle)
            except (DispatchError, OSError, ConnectionError) as e:
                poll_errors += 1
                if poll_errors >= self.max_poll_errors:
                    self._cancel(handle)
                    return Completion.failure(
                        f"cluster poll failed for {handle} {poll_errors} time(s): {e}",
                        logs_ref=logs_ref,
                        transient=True,
                    )
                logger.warning(f"Polling {handle} failed ({poll_errors}/{self.max_poll_errors}): {e}")
                status = None
            else:
                poll_errors = 0

            if status == CLUSTER_SUCCEEDED:
                return Completion.success(declared_assets(task), logs_ref=logs_ref)
            if status == CLUSTER_FAILED:
                return Completion.failure(f"cluster job {handle} failed", logs_ref=logs_ref)

            wait = self.poll_interval_seconds
            remaining = context.remaining()
            if remaining is not None:
                wait = min(wait, remaining)
            context.cancel_event.wait(wait)

    def _cancel(self, handle: str) -> None:
        try:
            self.backend.cancel(handle)
        except (DispatchError, OSError, ConnectionError) as e:
            # Job is allowed to finish; its result is discarded
            logger.warning(f"Best-effort cancel of {handle} failed: {e}")
