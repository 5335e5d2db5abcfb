"""
Inline executor - in-process dispatch to registered callables.

Tasks of kind `inline` name a callable via `config.callable`: either a name
registered with register_callable() or a "package.module:function"
reference imported on first use. The callable receives (task, context)
and may return:
- None: success, every declared outlet produced
- a Completion: used as is
- an iterable of asset names: success, those outlets produced

Callables raise on failure. Inline work runs on a Scheduler worker thread,
so it never blocks readiness evaluation, but it should still be short.
"""

import importlib
import logging
import threading
from typing import Any, Callable, Optional

from productflow.errors import TaskExecutionFailure
from productflow.handlers.base import RunContext, declared_assets
from productflow.schemas import Completion, TaskDescriptor

logger = logging.getLogger(__name__)

InlineCallable = Callable[[TaskDescriptor, RunContext], Any]


class InlineExecutor:
    """
    Executor for inline tasks.

    Usage:
        executor = InlineExecutor()
        executor.register_callable("download", download_fn)
        completion = executor.execute(task, context)
    """

    def __init__(self, callables: Optional[dict[str, InlineCallable]] = None):
        self._lock = threading.Lock()
        self._callables: dict[str, InlineCallable] = dict(callables or {})

    def register_callable(self, name: str, fn: InlineCallable) -> None:
        with self._lock:
            self._callables[name] = fn

    def has_callable(self, name: str) -> bool:
        return name in self._callables

    def list_callables(self) -> list[str]:
        return sorted(self._callables)

    def _import_callable(self, name: str, task_id: str) -> Optional[InlineCallable]:
        """Resolve a "package.module:function" reference and cache it."""
        if ":" not in name:
            return None
        module_name, _, attr = name.partition(":")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise TaskExecutionFailure(task_id, f"cannot import {module_name}: {e}")
        fn = getattr(module, attr, None)
        if fn is None or not callable(fn):
            return None
        self.register_callable(name, fn)
        return fn

    def execute(self, task: TaskDescriptor, context: RunContext) -> Completion:
        name = task.config.get("callable")
        if not name:
            raise TaskExecutionFailure(task.id, "inline task requires config.callable")
        fn = self._callables.get(name) or self._import_callable(name, task.id)
        if fn is None:
            raise TaskExecutionFailure(
                task.id, f"Unknown callable: {name}. Registered: {self.list_callables()}"
            )

        logger.debug(f"Invoking callable {name} for {context.run_id}/{task.id}")
        result = fn(task, context)
        return _to_completion(task, result, logs_ref=f"inline:{name}")


def _to_completion(task: TaskDescriptor, result: Any, logs_ref: str) -> Completion:
    if result is None:
        return Completion.success(declared_assets(task), logs_ref=logs_ref)
    if isinstance(result, Completion):
        return result
    if isinstance(result, str):
        return Completion.success(declared_assets(task, [result]), logs_ref=logs_ref)
    try:
        names = list(result)
    except TypeError:
        raise TaskExecutionFailure(
            task.id, f"callable returned unsupported type {type(result).__name__}"
        )
    return Completion.success(declared_assets(task, names), logs_ref=logs_ref)
