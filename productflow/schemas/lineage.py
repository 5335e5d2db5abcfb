"""
LineageEdge schema - one producer/consumer relationship in the metadata store.

Nodes are namespaced strings:
- task nodes:  "task:<product_id>/<task_id>"
- asset nodes: "asset:<asset_name>"

A production edge runs task -> asset, a consumption edge asset -> task.
The (producer, consumer, asset) triple is the idempotency key.
"""

from dataclasses import dataclass
from typing import Any


def task_node(product_id: str, task_id: str) -> str:
    return f"task:{product_id}/{task_id}"


def asset_node(asset_name: str) -> str:
    return f"asset:{asset_name}"


@dataclass(frozen=True)
class LineageEdge:
    producer: str
    consumer: str
    asset: str

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.producer, self.consumer, self.asset)

    def to_dict(self) -> dict[str, Any]:
        return {"producer": self.producer, "consumer": self.consumer, "asset": self.asset}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineageEdge":
        return cls(producer=data["producer"], consumer=data["consumer"], asset=data["asset"])
