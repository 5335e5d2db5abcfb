"""
Asset schema - a produced or consumed data artifact.

Identity is the asset name: two Assets with the same name are equal
regardless of which task produced them or what schema hint they carry.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class Asset:
    """
    A data artifact identified by a stable name.

    Attributes:
        name: Stable asset name (identity)
        producing_task_id: Task declaring this asset as an outlet, if known
        schema_hint: Free-form hint about the asset's format (e.g. "csv", "parquet")
    """
    name: str
    producing_task_id: Optional[str] = field(default=None, compare=False)
    schema_hint: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Asset name must be a non-empty string")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {"name": self.name}
        if self.producing_task_id is not None:
            result["producing_task_id"] = self.producing_task_id
        if self.schema_hint is not None:
            result["schema_hint"] = self.schema_hint
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Asset":
        """Deserialize from dictionary."""
        return cls(
            name=data["name"],
            producing_task_id=data.get("producing_task_id"),
            schema_hint=data.get("schema_hint"),
        )
