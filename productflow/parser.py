"""
Parser - turn staged definition bytes into a validated GraphModel.

The parser provides:
- YAML/JSON decoding of a definition document
- Structural validation (task ids, kinds, upstream references, outlets)
- Cycle detection via topological sort, reporting the offending cycle
- Deterministic topological ordering (ties broken by task id)

A definition that fails any check is rejected in its entirety: parse()
either returns a complete GraphModel or raises ValidationError.
"""

import hashlib
import heapq
from typing import Any, Iterable, Mapping, Optional

import yaml

from productflow.errors import ValidationError
from productflow.schemas import (
    AdmissionPolicy,
    BackoffPolicy,
    BackoffStrategy,
    GraphModel,
    ProductPolicy,
    TaskDescriptor,
    TaskKind,
)

KNOWN_TASK_KEYS = {
    "id", "kind", "config", "outlets", "upstream",
    "max_attempts", "retry_backoff", "timeout_seconds",
}


def normalize_definition(definition_bytes: bytes) -> bytes:
    """
    Normalize definition bytes so cosmetic edits do not change the fingerprint.

    - UTF-8 BOM stripped
    - CRLF / CR line endings converted to LF
    - Trailing whitespace stripped from each line
    - Trailing blank lines removed
    """
    data = definition_bytes
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    data = data.replace(b"\r\n", b"\n").replace(b"\r", b"\n")
    lines = [line.rstrip() for line in data.split(b"\n")]
    return b"\n".join(lines).rstrip(b"\n")


def compute_fingerprint(definition_bytes: bytes) -> str:
    """SHA256 hex digest of the normalized definition bytes."""
    return hashlib.sha256(normalize_definition(definition_bytes)).hexdigest()


def parse(
    definition_bytes: bytes,
    product_id: Optional[str] = None,
    default_policy: Optional[ProductPolicy] = None,
) -> GraphModel:
    """
    Parse and validate a staged definition.

    Args:
        definition_bytes: Raw YAML or JSON bytes
        product_id: Product path the artifact was staged under. When given,
                    the document's product_id must match it.
        default_policy: Policy used for fields the document does not set

    Returns:
        GraphModel with version 0 (the registry assigns the real version)

    Raises:
        ValidationError: If the definition is malformed or not a valid DAG
    """
    try:
        data = yaml.safe_load(definition_bytes)
    except yaml.YAMLError as e:
        raise ValidationError(ValidationError.MALFORMED, f"Invalid YAML: {e}", product_id)

    if not isinstance(data, dict):
        raise ValidationError(
            ValidationError.MALFORMED, "Definition must be a mapping", product_id
        )

    doc_product = data.get("product_id")
    if not isinstance(doc_product, str) or not doc_product.strip():
        raise ValidationError(
            ValidationError.MALFORMED, "product_id must be a non-empty string", product_id
        )
    if product_id is not None and doc_product != product_id:
        raise ValidationError(
            ValidationError.PRODUCT_MISMATCH,
            f"definition declares product_id '{doc_product}' but is staged as '{product_id}'",
            product_id,
        )
    product_id = doc_product

    policy = _parse_policy(data.get("policy"), default_policy or ProductPolicy(), product_id)

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise ValidationError(
            ValidationError.MALFORMED, "tasks must be a non-empty list", product_id
        )

    tasks: dict[str, TaskDescriptor] = {}
    for raw in raw_tasks:
        task = _parse_task(raw, product_id)
        if task.id in tasks:
            raise ValidationError(
                ValidationError.DUPLICATE_TASK_ID,
                f"task id '{task.id}' is declared more than once",
                product_id,
                task_id=task.id,
            )
        tasks[task.id] = task

    validate_tasks(tasks, product_id)
    order = topological_order(tasks, product_id)

    return GraphModel(
        product_id=product_id,
        version=0,
        tasks=tasks,
        policy=policy,
        fingerprint=compute_fingerprint(definition_bytes),
        order=tuple(order),
    )


def validate_tasks(tasks: Mapping[str, TaskDescriptor], product_id: Optional[str] = None) -> None:
    """
    Check graph-level invariants that do not need an ordering.

    Raises:
        ValidationError: UnknownUpstream or DuplicateOutlet
    """
    for tid in sorted(tasks):
        for upstream_id in sorted(tasks[tid].upstream):
            if upstream_id not in tasks:
                raise ValidationError(
                    ValidationError.UNKNOWN_UPSTREAM,
                    f"task '{tid}' depends on unknown task '{upstream_id}'",
                    product_id,
                    task_id=tid,
                )

    producers: dict[str, str] = {}
    for tid in sorted(tasks):
        for outlet in sorted(tasks[tid].outlets):
            if outlet in producers:
                raise ValidationError(
                    ValidationError.DUPLICATE_OUTLET,
                    f"asset '{outlet}' is produced by both '{producers[outlet]}' and '{tid}'",
                    product_id,
                    task_id=tid,
                )
            producers[outlet] = tid


def topological_order(
    tasks: Mapping[str, TaskDescriptor],
    product_id: Optional[str] = None,
) -> list[str]:
    """
    Deterministic topological order of task ids (Kahn, lexicographic ties).

    Raises:
        ValidationError: CycleDetected, carrying the cycle in upstream -> downstream order
    """
    incoming_count = {tid: len(task.upstream) for tid, task in tasks.items()}
    outgoing: dict[str, set[str]] = {tid: set() for tid in tasks}
    for tid, task in tasks.items():
        for upstream_id in task.upstream:
            outgoing[upstream_id].add(tid)

    ready = [tid for tid, count in incoming_count.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        tid = heapq.heappop(ready)
        order.append(tid)
        for child in outgoing[tid]:
            incoming_count[child] -= 1
            if incoming_count[child] == 0:
                heapq.heappush(ready, child)

    if len(order) != len(tasks):
        ordered = set(order)
        remaining = {tid for tid in tasks if tid not in ordered}
        cycle = find_cycle(tasks, remaining)
        raise ValidationError(
            ValidationError.CYCLE_DETECTED,
            "cycle in task dependencies: " + " -> ".join(cycle + [cycle[0]]),
            product_id,
            cycle=cycle,
        )
    return order


def find_cycle(tasks: Mapping[str, TaskDescriptor], remaining: Iterable[str]) -> list[str]:
    """
    Extract one cycle from the tasks Kahn's algorithm could not order.

    Every leftover task still has at least one leftover upstream, so walking
    upstream edges from any leftover task must revisit a task. The walk is
    reversed so the result reads upstream -> downstream.
    """
    remaining = set(remaining)
    current = min(remaining)
    path: list[str] = []
    seen_at: dict[str, int] = {}
    while current not in seen_at:
        seen_at[current] = len(path)
        path.append(current)
        current = min(u for u in tasks[current].upstream if u in remaining)
    cycle = path[seen_at[current]:]
    cycle.reverse()
    return cycle


def _parse_policy(raw: Any, default: ProductPolicy, product_id: str) -> ProductPolicy:
    if raw is None:
        return default
    if not isinstance(raw, dict):
        raise ValidationError(ValidationError.MALFORMED, "policy must be a mapping", product_id)
    run_on_change = raw.get("run_on_change", default.run_on_change)
    if not isinstance(run_on_change, bool):
        raise ValidationError(
            ValidationError.MALFORMED,
            f"policy.run_on_change must be true or false, got {run_on_change!r}",
            product_id,
        )
    try:
        return ProductPolicy(
            admission=AdmissionPolicy(raw.get("admission", default.admission.value)),
            run_on_change=run_on_change,
            max_concurrent_runs=int(raw.get("max_concurrent_runs", default.max_concurrent_runs)),
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(ValidationError.MALFORMED, f"invalid policy: {e}", product_id)


def _parse_task(raw: Any, product_id: str) -> TaskDescriptor:
    if not isinstance(raw, dict):
        raise ValidationError(ValidationError.MALFORMED, "each task must be a mapping", product_id)

    task_id = raw.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise ValidationError(
            ValidationError.MALFORMED, "task id must be a non-empty string", product_id
        )

    unknown = set(raw) - KNOWN_TASK_KEYS
    if unknown:
        raise ValidationError(
            ValidationError.MALFORMED,
            f"task '{task_id}' has unknown keys: {sorted(unknown)}",
            product_id,
            task_id=task_id,
        )

    try:
        kind = TaskKind(raw.get("kind", TaskKind.INLINE.value))
    except ValueError:
        raise ValidationError(
            ValidationError.MALFORMED,
            f"task '{task_id}' has unknown kind '{raw.get('kind')}'",
            product_id,
            task_id=task_id,
        )

    config = raw.get("config") or {}
    if not isinstance(config, dict):
        raise ValidationError(
            ValidationError.MALFORMED, f"task '{task_id}': config must be a mapping",
            product_id, task_id=task_id,
        )

    upstream = raw.get("upstream") or []
    if not isinstance(upstream, list) or not all(isinstance(u, str) for u in upstream):
        raise ValidationError(
            ValidationError.MALFORMED, f"task '{task_id}': upstream must be a list of task ids",
            product_id, task_id=task_id,
        )

    outlets, hints = _parse_outlets(raw.get("outlets") or [], task_id, product_id)

    try:
        backoff_raw = raw.get("retry_backoff") or {}
        if not isinstance(backoff_raw, dict):
            raise ValueError("retry_backoff must be a mapping")
        return TaskDescriptor(
            id=task_id,
            kind=kind,
            config=config,
            outlets=frozenset(outlets),
            upstream=frozenset(upstream),
            max_attempts=int(raw.get("max_attempts", 1)),
            retry_backoff=BackoffPolicy(
                strategy=BackoffStrategy(backoff_raw.get("strategy", "fixed")),
                base_seconds=float(backoff_raw.get("base_seconds", 0.0)),
                cap_seconds=float(backoff_raw.get("cap_seconds", 300.0)),
            ),
            timeout_seconds=(
                float(raw["timeout_seconds"]) if raw.get("timeout_seconds") is not None else None
            ),
            outlet_hints=hints,
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(
            ValidationError.MALFORMED, f"task '{task_id}': {e}", product_id, task_id=task_id
        )


def _parse_outlets(raw: Any, task_id: str, product_id: str) -> tuple[list[str], dict[str, str]]:
    if not isinstance(raw, list):
        raise ValidationError(
            ValidationError.MALFORMED, f"task '{task_id}': outlets must be a list",
            product_id, task_id=task_id,
        )
    names: list[str] = []
    hints: dict[str, str] = {}
    for item in raw:
        if isinstance(item, str):
            name, hint = item, None
        elif isinstance(item, dict) and isinstance(item.get("name"), str):
            name, hint = item["name"], item.get("schema_hint")
        else:
            raise ValidationError(
                ValidationError.MALFORMED,
                f"task '{task_id}': outlet must be a name or a mapping with 'name'",
                product_id, task_id=task_id,
            )
        if not name.strip():
            raise ValidationError(
                ValidationError.MALFORMED, f"task '{task_id}': empty outlet name",
                product_id, task_id=task_id,
            )
        if name in names:
            raise ValidationError(
                ValidationError.DUPLICATE_OUTLET,
                f"asset '{name}' is declared twice by task '{task_id}'",
                product_id, task_id=task_id,
            )
        names.append(name)
        if hint is not None:
            hints[name] = str(hint)
    return names, hints
