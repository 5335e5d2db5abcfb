"""
Lineage registration and stores.

BigQueryLineageStore lives in productflow.lineage.bigquery_store and is
imported on demand.
"""

from productflow.lineage.registrar import LineageRegistrar, PendingRegistration, build_edges
from productflow.lineage.store import InMemoryLineageStore, LineageStore

__all__ = [
    "LineageRegistrar",
    "PendingRegistration",
    "build_edges",
    "InMemoryLineageStore",
    "LineageStore",
]
