"""
GraphModel schema - a versioned DAG of TaskDescriptors for one data product.

A GraphModel is created by the Sync Agent from a staged definition,
superseded (never deleted or mutated) by a newer version, and retained
for runs already in progress.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .asset import Asset
from .task import TaskDescriptor


class AdmissionPolicy(str, Enum):
    """What happens to a trigger while the product already has an active run."""
    QUEUE = "queue"
    REJECT = "reject"


@dataclass(frozen=True)
class ProductPolicy:
    """
    Per-product scheduling policy.

    Attributes:
        admission: queue or reject triggers beyond max_concurrent_runs
        run_on_change: create a run whenever a new version becomes current
        max_concurrent_runs: active (non-terminal) runs allowed at once
    """
    admission: AdmissionPolicy = AdmissionPolicy.QUEUE
    run_on_change: bool = False
    max_concurrent_runs: int = 1

    def __post_init__(self):
        if self.max_concurrent_runs < 1:
            raise ValueError("max_concurrent_runs must be >= 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "admission": self.admission.value,
            "run_on_change": self.run_on_change,
            "max_concurrent_runs": self.max_concurrent_runs,
        }


@dataclass(frozen=True)
class GraphModel:
    """
    A validated, versioned task graph for a data product.

    Attributes:
        product_id: Data product this graph belongs to
        version: Monotonically increasing per product (assigned at registration)
        tasks: Mapping of task id to TaskDescriptor
        policy: Scheduling policy for runs of this product
        fingerprint: SHA256 of the normalized definition bytes it was parsed from
        order: Deterministic topological order of task ids
    """
    product_id: str
    version: int
    tasks: Mapping[str, TaskDescriptor]
    policy: ProductPolicy = field(default_factory=ProductPolicy)
    fingerprint: Optional[str] = None
    order: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "tasks", MappingProxyType(dict(self.tasks)))
        object.__setattr__(self, "order", tuple(self.order))

    def with_version(self, version: int) -> "GraphModel":
        """Return a copy of this graph carrying a different version number."""
        return GraphModel(
            product_id=self.product_id,
            version=version,
            tasks=self.tasks,
            policy=self.policy,
            fingerprint=self.fingerprint,
            order=self.order,
        )

    @property
    def assets(self) -> dict[str, Asset]:
        """All declared outlet assets keyed by name."""
        result: dict[str, Asset] = {}
        for task in self.tasks.values():
            for name in task.outlets:
                result[name] = Asset(
                    name=name,
                    producing_task_id=task.id,
                    schema_hint=task.outlet_hints.get(name),
                )
        return result

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "product_id": self.product_id,
            "version": self.version,
            "policy": self.policy.to_dict(),
            "order": list(self.order),
            "tasks": {tid: task.to_dict() for tid, task in self.tasks.items()},
        }
        if self.fingerprint is not None:
            result["fingerprint"] = self.fingerprint
        return result
