"""
productflow - Data product orchestration core

Synchronizes task-graph definitions from a staging store, schedules runs
across inline, local-container and cluster executors, and records asset
lineage for every successful task.
"""

__version__ = "0.1.0"


__all__ = ["ProductflowConfig", "load_config", "get_productflow_home"]

from .config import ProductflowConfig, load_config, get_productflow_home
