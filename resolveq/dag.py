"""Dependency analysis: overlap scoring, DAG construction, and cycle guards."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from itertools import combinations

import structlog

from .errors import ResolveqError
from .models import DependencyEdge, Issue

logger = structlog.get_logger()

DEFAULT_LINE_WINDOW = 30


class ResolveqDAGError(ResolveqError):
    """Raised when DAG validation fails."""


@dataclass
class DependencyGraph:
    """Directed graph over issue keys. ``deps[a]`` holds what ``a`` waits on."""

    nodes: list[str] = field(default_factory=list)
    deps: dict[str, set[str]] = field(default_factory=dict)
    weights: dict[tuple[str, str], int] = field(default_factory=dict)

    def add_node(self, key: str) -> None:
        if key not in self.deps:
            self.nodes.append(key)
            self.deps[key] = set()

    def add_edge(self, dependent: str, dependency: str, weight: int) -> None:
        self.add_node(dependent)
        self.add_node(dependency)
        self.deps[dependent].add(dependency)
        self.weights[(dependent, dependency)] = weight

    def remove_edge(self, dependent: str, dependency: str) -> None:
        self.deps[dependent].discard(dependency)
        self.weights.pop((dependent, dependency), None)

    def dependencies_of(self, key: str) -> set[str]:
        return set(self.deps.get(key, set()))

    def dependents_of(self, key: str) -> set[str]:
        return {n for n, d in self.deps.items() if key in d}

    def weight(self, a: str, b: str) -> int:
        """Edge weight between two nodes in either direction (0 if none)."""
        return self.weights.get((a, b), 0) or self.weights.get((b, a), 0)

    @property
    def edges(self) -> list[DependencyEdge]:
        return [
            DependencyEdge(dependent=a, dependency=b, weight=w)
            for (a, b), w in sorted(self.weights.items())
        ]

    def to_mapping(self) -> dict[str, set[str]]:
        return {n: set(self.deps[n]) for n in self.nodes}


def overlap_score(a: Issue, b: Issue, window: int = DEFAULT_LINE_WINDOW) -> int:
    """Structural overlap between two issues.

    +2 same file and same enclosing function; otherwise +1 same file,
    and +1 more when the lines are closer than ``window``.
    Functions only count as "same" when both are known.
    """
    if a.file != b.file:
        return 0
    if a.function is not None and a.function == b.function:
        return 2
    score = 1
    if abs(a.line - b.line) < window:
        score += 1
    return score


def build_dependency_graph(
    issues: list[Issue], window: int = DEFAULT_LINE_WINDOW
) -> DependencyGraph:
    """Build the issue DAG.

    The lower issue key always depends on the higher one, so the graph is
    acyclic by construction. Issues are sorted first, which makes the result
    independent of input order.
    """
    ordered = sorted(issues, key=lambda i: i.sort_key)
    graph = DependencyGraph()

    by_file: dict[str, list[Issue]] = defaultdict(list)
    for issue in ordered:
        graph.add_node(issue.key)
        by_file[issue.file].append(issue)

    for file in sorted(by_file):
        for lower, higher in combinations(by_file[file], 2):
            score = overlap_score(lower, higher, window)
            if score >= 1:
                graph.add_edge(lower.key, higher.key, score)

    logger.debug(
        "dependency_graph_built",
        nodes=len(graph.nodes),
        edges=len(graph.weights),
        window=window,
    )
    return graph


def topological_order(graph: dict[str, set[str]]) -> list[str]:
    """Return topologically sorted node list (dependencies first). Raises on cycle."""
    if not graph:
        return []
    ts = TopologicalSorter({n: sorted(graph[n]) for n in sorted(graph)})
    try:
        return list(ts.static_order())
    except CycleError as e:
        raise ResolveqDAGError(f"Dependency cycle detected: {e}") from e


def check_acyclic(graph: dict[str, set[str]]) -> None:
    """Validate DAG: check for cycles and missing dependencies."""
    known = set(graph.keys())
    for node, deps in graph.items():
        missing = deps - known
        if missing:
            raise ResolveqDAGError(
                f"Node '{node}' depends on unknown nodes: {missing}"
            )
    topological_order(graph)


def break_cycles(graph: DependencyGraph) -> list[DependencyEdge]:
    """Drop the weakest edge of every cycle until the graph is a DAG.

    Graphs from ``build_dependency_graph`` never need this; it guards graphs
    assembled by hand or loaded from elsewhere. Returns the dropped edges.
    """
    dropped: list[DependencyEdge] = []
    while True:
        ts = TopologicalSorter({n: sorted(graph.deps[n]) for n in sorted(graph.deps)})
        try:
            ts.prepare()
            return dropped
        except CycleError as e:
            cycle: list[str] = e.args[1]
        # Each node in the cycle is a dependency of the node after it.
        candidates = [
            (graph.weights.get((after, before), 0), (after, before))
            for before, after in zip(cycle, cycle[1:])
        ]
        weight, (dependent, dependency) = min(candidates)
        graph.remove_edge(dependent, dependency)
        edge = DependencyEdge(dependent=dependent, dependency=dependency, weight=weight)
        dropped.append(edge)
        logger.warning(
            "dependency_cycle_edge_dropped",
            dependent=dependent,
            dependency=dependency,
            weight=weight,
            cycle=cycle,
        )
