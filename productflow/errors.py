"""
Error classes for productflow.

These error types enable retry classification at execution boundaries:
- TransientError: Safe to retry (backend unreachable, timeouts, metadata store hiccups)
- PermanentError: Do not retry (malformed definitions, task logic failures)

Error taxonomy:
- ValidationError: malformed definition - rejected, prior version retained
- AdmissionRejected: concurrent-run policy violation - surfaced to caller, no state change
- DispatchError: backend unreachable - retried by dispatch, then surfaced as task FAILED
- TaskExecutionFailure: task logic failed - subject to task retry policy, then terminal
- TaskTimeoutError: task exceeded its maximum duration - treated like a dispatch failure
- RegistrationError: lineage publish failed - retried independently, never fails the task

Error handling contract:
- Errors are exceptions, not values
- The Scheduler converts exceptions into task state at the dispatch boundary
"""

from typing import Optional, Sequence


class ProductflowError(Exception):
    """Base exception for productflow."""
    pass


class TransientError(ProductflowError):
    """
    Transient error - safe to retry.

    Examples:
    - Container runtime or cluster API unreachable
    - Network timeout
    - Metadata store temporarily unavailable
    """
    pass


class PermanentError(ProductflowError):
    """
    Permanent error - do not retry.

    Examples:
    - Malformed or cyclic definition
    - Task logic failure after its own retry budget
    - Unknown task kind
    """
    pass


class ConfigError(ProductflowError):
    """Configuration validation error."""
    pass


class ValidationError(PermanentError):
    """
    Raised when a staged definition fails validation.

    Attributes:
        kind: Failure category (Malformed, DuplicateTaskId, UnknownUpstream,
              DuplicateOutlet, CycleDetected, ProductMismatch)
        product_id: Product the definition was staged for, if known
        task_id: Offending task, if the failure is task-local
        cycle: Ordered task ids forming the cycle (CycleDetected only)
    """

    MALFORMED = "Malformed"
    DUPLICATE_TASK_ID = "DuplicateTaskId"
    UNKNOWN_UPSTREAM = "UnknownUpstream"
    DUPLICATE_OUTLET = "DuplicateOutlet"
    CYCLE_DETECTED = "CycleDetected"
    PRODUCT_MISMATCH = "ProductMismatch"

    def __init__(
        self,
        kind: str,
        message: str,
        product_id: Optional[str] = None,
        task_id: Optional[str] = None,
        cycle: Optional[Sequence[str]] = None,
    ):
        self.kind = kind
        self.product_id = product_id
        self.task_id = task_id
        self.cycle = tuple(cycle) if cycle else ()
        prefix = f"[{product_id}] " if product_id else ""
        super().__init__(f"{prefix}{kind}: {message}")


class AdmissionRejected(ProductflowError):
    """Raised when a run trigger is refused by the admission policy."""

    UNKNOWN_PRODUCT = "unknown_product"
    RETIRED = "retired"
    CONCURRENCY_LIMIT = "concurrency_limit"
    SHUTTING_DOWN = "shutting_down"

    def __init__(self, product_id: str, reason: str, message: str = ""):
        self.product_id = product_id
        self.reason = reason
        detail = f": {message}" if message else ""
        super().__init__(f"Run for '{product_id}' rejected ({reason}){detail}")


class DispatchError(TransientError):
    """Raised when an execution backend cannot even start a task."""

    def __init__(self, task_id: str, message: str, cause: Optional[Exception] = None):
        self.task_id = task_id
        self.cause = cause
        super().__init__(f"Dispatch of task '{task_id}' failed: {message}")


class TaskTimeoutError(TransientError):
    """Raised when a task exceeds its declared maximum duration."""

    def __init__(self, task_id: str, timeout_seconds: float):
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Task '{task_id}' exceeded timeout of {timeout_seconds}s")


class TaskExecutionFailure(PermanentError):
    """Raised by task code (or derived from a failed Completion) when task logic fails."""

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' failed: {message}")


class RegistrationError(TransientError):
    """Raised when lineage edges could not be published to the metadata store."""

    def __init__(self, run_id: str, task_id: str, message: str):
        self.run_id = run_id
        self.task_id = task_id
        super().__init__(f"Lineage registration for {run_id}/{task_id} failed: {message}")


class RunNotFoundError(ProductflowError):
    """Raised when a run id is unknown to the Scheduler."""
    pass


class StagingError(TransientError):
    """Raised when the staging object store cannot be listed or read."""
    pass
