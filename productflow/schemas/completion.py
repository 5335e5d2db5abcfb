"""
Completion schema - the uniform result every executor reports.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from .asset import Asset


class CompletionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Completion:
    """
    Outcome of executing one attempt of a task.

    Attributes:
        status: success or failure
        output_assets: Assets the task actually produced
        logs_ref: Reference to backend logs (file path, container id, cluster handle)
        error: Failure detail when status is failure
        transient: True if the failure came from the dispatch layer
                   (backend unreachable, timeout) rather than task logic
    """
    status: CompletionStatus
    output_assets: frozenset[Asset] = field(default_factory=frozenset)
    logs_ref: Optional[str] = None
    error: Optional[str] = None
    transient: bool = False

    def __post_init__(self):
        object.__setattr__(self, "output_assets", frozenset(self.output_assets))

    @property
    def succeeded(self) -> bool:
        return self.status == CompletionStatus.SUCCESS

    @classmethod
    def success(
        cls,
        output_assets: Iterable[Asset] = (),
        logs_ref: Optional[str] = None,
    ) -> "Completion":
        return cls(CompletionStatus.SUCCESS, frozenset(output_assets), logs_ref)

    @classmethod
    def failure(
        cls,
        error: str,
        logs_ref: Optional[str] = None,
        transient: bool = False,
    ) -> "Completion":
        return cls(CompletionStatus.FAILURE, frozenset(), logs_ref, error, transient)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "status": self.status.value,
            "output_assets": [a.to_dict() for a in sorted(self.output_assets, key=lambda a: a.name)],
        }
        if self.logs_ref is not None:
            result["logs_ref"] = self.logs_ref
        if self.error is not None:
            result["error"] = self.error
        if self.transient:
            result["transient"] = True
        return result
