"""Scheduler: partition the issue DAG into layered batches."""

from __future__ import annotations

from itertools import groupby

import structlog

from .dag import DependencyGraph, ResolveqDAGError
from .errors import InvalidConfigurationError
from .models import Batch, BatchMode, Issue

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 5


def connected_components(graph: DependencyGraph) -> dict[str, int]:
    """Map each node to a component id, ignoring edge direction."""
    neighbours: dict[str, set[str]] = {n: set() for n in graph.nodes}
    for dependent, dependency in graph.weights:
        neighbours[dependent].add(dependency)
        neighbours[dependency].add(dependent)

    component: dict[str, int] = {}
    for cid, start in enumerate(sorted(graph.nodes)):
        if start in component:
            continue
        stack = [start]
        while stack:
            node = stack.pop()
            if node in component:
                continue
            component[node] = cid
            stack.extend(neighbours[node] - component.keys())
    return component


def _order_ready(ready: list[str], component: dict[str, int]) -> list[str]:
    """Keep related issues adjacent: biggest related group first, loners last."""
    grouped = sorted(ready, key=lambda k: (component[k], k))
    groups = [list(g) for _, g in groupby(grouped, key=lambda k: component[k])]
    groups.sort(key=lambda g: (-len(g), g[0]))
    return [k for g in groups for k in g]


def _absorb(
    batch: list[str],
    graph: DependencyGraph,
    remaining: set[str],
    done: set[str],
    batch_size: int,
) -> list[str]:
    """Pull in dependents whose every dependency is done or already in ``batch``.

    The worker handles a batch in order, so such a dependent is safe to run
    right after its dependencies. Returns the absorbed keys in order.
    """
    absorbed: list[str] = []
    members = set(batch)
    changed = True
    while changed and len(batch) < batch_size:
        changed = False
        candidates = sorted(
            {d for m in members for d in graph.dependents_of(m)} & remaining
        )
        for key in candidates:
            if len(batch) >= batch_size:
                break
            deps = graph.deps[key]
            if deps <= (done | members) and deps & members:
                batch.append(key)
                members.add(key)
                remaining.discard(key)
                absorbed.append(key)
                changed = True
    return absorbed


def _pick_batch(
    key: str,
    layer_batches: list[list[str]],
    graph: DependencyGraph,
    component: dict[str, int],
    remaining: set[str],
    batch_size: int,
) -> list[str]:
    """Choose the batch of the current layer that ``key`` joins."""
    open_batches = [b for b in layer_batches if len(b) < batch_size]
    related = [
        b for b in open_batches if any(component[m] == component[key] for m in b)
    ]
    if related:
        return max(related, key=lambda b: sum(graph.weight(key, m) for m in b))

    # Only share a batch with strangers if the whole group still fits.
    group_size = sum(1 for n in remaining if component[n] == component[key])
    for b in open_batches:
        if batch_size - len(b) >= group_size:
            return b
    layer_batches.append([])
    return layer_batches[-1]


def schedule_batches(
    graph: DependencyGraph,
    issues: list[Issue],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[Batch]:
    """Topological layering with greedy packing.

    Layer 0 batches are PARALLEL; later layers are SEQUENTIAL and wait only
    on the batches that feed them an edge.
    """
    if batch_size <= 0:
        raise InvalidConfigurationError(f"batch_size must be positive, got {batch_size}")

    by_key = {i.key: i for i in issues}
    for key in sorted(by_key):
        graph.add_node(key)
    unknown = set(graph.nodes) - by_key.keys()
    if unknown:
        raise ResolveqDAGError(f"Graph references unknown issues: {sorted(unknown)}")

    component = connected_components(graph)
    in_degree = {n: len(graph.deps[n]) for n in graph.nodes}
    remaining = set(graph.nodes)
    done: set[str] = set()
    batch_of: dict[str, str] = {}
    batches: list[Batch] = []
    layer = 0

    while remaining:
        ready = [n for n in remaining if in_degree[n] == 0]
        if not ready:
            raise ResolveqDAGError(
                f"Cannot schedule issues with unresolved dependencies: {sorted(remaining)}"
            )

        layer_batches: list[list[str]] = []
        for key in _order_ready(ready, component):
            target = _pick_batch(
                key, layer_batches, graph, component, remaining, batch_size
            )
            target.append(key)
            remaining.discard(key)
            _absorb(target, graph, remaining, done, batch_size)

        extracted: list[str] = []
        for n, keys in enumerate(layer_batches, start=1):
            batch_id = f"b{layer}-{n}"
            members = set(keys)
            wait_on = sorted({
                batch_of[dep]
                for k in keys
                for dep in graph.deps[k]
                if dep not in members
            })
            batches.append(Batch(
                id=batch_id,
                layer=layer,
                issues=tuple(by_key[k] for k in keys),
                mode=BatchMode.PARALLEL if layer == 0 else BatchMode.SEQUENTIAL,
                wait_on=tuple(wait_on),
            ))
            for k in keys:
                batch_of[k] = batch_id
            extracted.extend(keys)

        done.update(extracted)
        for key in extracted:
            for dependent in graph.dependents_of(key):
                in_degree[dependent] -= 1

        logger.debug(
            "layer_scheduled",
            layer=layer,
            batches=len(layer_batches),
            issues=len(extracted),
        )
        layer += 1

    return batches


def group_layers(batches: list[Batch]) -> list[list[Batch]]:
    """Split a batch list into layers, preserving order."""
    return [list(g) for _, g in groupby(batches, key=lambda b: b.layer)]
