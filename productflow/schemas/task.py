"""
Task schemas - the unit of work inside a Graph Model.

A TaskDescriptor is created when a definition is parsed and is immutable
thereafter. A definition change produces a new Graph Model version; it
never mutates the descriptors of a registered one.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class TaskKind(str, Enum):
    """Execution environment a task is routed to."""
    INLINE = "inline"
    CONTAINER_LOCAL = "container_local"
    CONTAINER_CLUSTER = "container_cluster"


class BackoffStrategy(str, Enum):
    """How the retry delay grows between attempts."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Retry delay policy.

    fixed:       base_seconds before every retry
    exponential: base_seconds * 2 ** (attempt - 1)
    Both are capped by cap_seconds.
    """
    strategy: BackoffStrategy = BackoffStrategy.FIXED
    base_seconds: float = 0.0
    cap_seconds: float = 300.0

    def __post_init__(self):
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be >= 0")
        if self.cap_seconds < 0:
            raise ValueError("cap_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Return the delay before retrying after failed attempt number `attempt` (1-indexed)."""
        if self.strategy == BackoffStrategy.EXPONENTIAL:
            delay = self.base_seconds * (2 ** max(attempt - 1, 0))
        else:
            delay = self.base_seconds
        return min(delay, self.cap_seconds)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "base_seconds": self.base_seconds,
            "cap_seconds": self.cap_seconds,
        }


@dataclass(frozen=True)
class TaskDescriptor:
    """
    A unit of work within a Graph Model.

    Attributes:
        id: Unique identifier within the graph
        kind: Execution environment (inline, container_local, container_cluster)
        config: Opaque key/value configuration handed to the executor
        outlets: Names of the assets this task produces
        upstream: Ids of tasks that must succeed before this one runs
        max_attempts: Total attempts allowed for task logic failures (default 1)
        retry_backoff: Delay policy between attempts
        timeout_seconds: Maximum duration of one attempt (None = unbounded)
        outlet_hints: Optional schema hint per outlet name
    """
    id: str
    kind: TaskKind
    config: Mapping[str, Any] = field(default_factory=dict)
    outlets: frozenset[str] = field(default_factory=frozenset)
    upstream: frozenset[str] = field(default_factory=frozenset)
    max_attempts: int = 1
    retry_backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    timeout_seconds: Optional[float] = None
    outlet_hints: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"Task '{self.id}': max_attempts must be >= 1")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"Task '{self.id}': timeout_seconds must be > 0")
        # Freeze containers so a registered graph can be shared across threads
        object.__setattr__(self, "config", MappingProxyType(dict(self.config)))
        object.__setattr__(self, "outlets", frozenset(self.outlets))
        object.__setattr__(self, "upstream", frozenset(self.upstream))
        object.__setattr__(self, "outlet_hints", MappingProxyType(dict(self.outlet_hints)))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "config": dict(self.config),
            "outlets": sorted(self.outlets),
            "upstream": sorted(self.upstream),
            "max_attempts": self.max_attempts,
            "retry_backoff": self.retry_backoff.to_dict(),
        }
        if self.timeout_seconds is not None:
            result["timeout_seconds"] = self.timeout_seconds
        if self.outlet_hints:
            result["outlet_hints"] = dict(self.outlet_hints)
        return result
