"""Staging object store adapters."""

from productflow.staging.base import (
    InMemoryStagingStore,
    LocalStagingStore,
    StagingStore,
    index_by_product,
    product_path_for,
)

__all__ = [
    "InMemoryStagingStore",
    "LocalStagingStore",
    "StagingStore",
    "index_by_product",
    "product_path_for",
]
