"""
DependencyGraph: Directed acyclic graph of resource descriptors.

Edges are inferred from References inside attributes and from explicit
``depends_on`` hints; both end up in the same edge set.
"""
from __future__ import annotations
import heapq
import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Union

from .descriptor import ResourceDescriptor
from .errors import CycleDetected, UnresolvedReference
from .store import DescriptorStore

logger = logging.getLogger(__name__)


@dataclass
class DependencyGraph:
    """
    A validated dependency graph.

    Attributes:
        descriptors: Map of logical name to descriptor, in declaration order
        edges: Map of logical name to the names it depends on
    """
    descriptors: Dict[str, ResourceDescriptor]
    edges: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    _dependents: Dict[str, Set[str]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._dependents = {name: set() for name in self.descriptors}
        for name, deps in self.edges.items():
            for dep in deps:
                if dep in self._dependents:
                    self._dependents[dep].add(name)

    @property
    def names(self) -> List[str]:
        return list(self.descriptors)

    def get(self, name: str) -> Optional[ResourceDescriptor]:
        return self.descriptors.get(name)

    def dependencies_of(self, name: str) -> FrozenSet[str]:
        return self.edges.get(name, frozenset())

    def dependents_of(self, name: str) -> FrozenSet[str]:
        return frozenset(self._dependents.get(name, ()))

    def transitive_dependents(self, name: str) -> Set[str]:
        """Every resource that directly or indirectly depends on ``name``."""
        visited: Set[str] = set()
        to_visit = list(self.dependents_of(name))
        while to_visit:
            current = to_visit.pop()
            if current in visited:
                continue
            visited.add(current)
            to_visit.extend(self.dependents_of(current))
        return visited

    def edge_set(self) -> Set[tuple]:
        """All ``(dependent, dependency)`` pairs."""
        return {(name, dep) for name, deps in self.edges.items() for dep in deps}

    def topological_order(self) -> List[str]:
        """
        Names in dependency order, ties broken by declaration order.

        Raises CycleDetected if the graph is not acyclic.
        """
        return topological_sort(self.names, self.edges)

    def waves(self) -> List[List[str]]:
        """
        Group names into waves; every member of a wave depends only on
        members of earlier waves.
        """
        level: Dict[str, int] = {}
        waves: List[List[str]] = []
        for name in self.topological_order():
            deps = self.dependencies_of(name)
            depth = max((level[d] + 1 for d in deps), default=0)
            level[name] = depth
            while len(waves) <= depth:
                waves.append([])
            waves[depth].append(name)
        return waves

    def __len__(self) -> int:
        return len(self.descriptors)

    def __repr__(self) -> str:
        return f"DependencyGraph(resources={len(self.descriptors)}, edges={len(self.edge_set())})"


def topological_sort(names: List[str], edges: Dict[str, Iterable[str]]) -> List[str]:
    """
    Kahn's algorithm over ``names``; ``edges[n]`` lists what ``n`` depends on.

    Edges pointing outside ``names`` are ignored. Among nodes that are ready
    at the same time, the one listed first in ``names`` comes first.
    """
    index = {name: i for i, name in enumerate(names)}
    in_degree = {name: 0 for name in names}
    dependents: Dict[str, List[str]] = {name: [] for name in names}

    for name in names:
        for dep in set(edges.get(name, ())):
            if dep in index and dep != name:
                in_degree[name] += 1
                dependents[dep].append(name)

    queue = [(index[name], name) for name in names if in_degree[name] == 0]
    heapq.heapify(queue)
    result: List[str] = []

    while queue:
        _, current = heapq.heappop(queue)
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(queue, (index[dependent], dependent))

    if len(result) != len(names):
        remaining = [n for n in names if n not in set(result)]
        raise CycleDetected(find_cycle(remaining, edges) or remaining)

    return result


def find_cycle(names: List[str], edges: Dict[str, Iterable[str]]) -> Optional[List[str]]:
    """
    Depth-first search with a recursion stack.

    Returns the first cycle found as a path that ends on its starting node,
    e.g. ``["a", "b", "a"]``, or None if the graph is acyclic.
    """
    known = set(names)
    visited: Set[str] = set()
    stack: List[str] = []
    on_stack: Set[str] = set()

    def visit(name: str) -> Optional[List[str]]:
        visited.add(name)
        stack.append(name)
        on_stack.add(name)
        for dep in sorted(set(edges.get(name, ()))):
            if dep not in known:
                continue
            if dep in on_stack:
                return stack[stack.index(dep):] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle
        stack.pop()
        on_stack.discard(name)
        return None

    for name in names:
        if name not in visited:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def build_graph(
    descriptors: Union[DescriptorStore, Iterable[ResourceDescriptor]]
) -> DependencyGraph:
    """
    Build and validate a dependency graph.

    Raises:
        DuplicateDeclaration: If two descriptors share a name with different types
        UnresolvedReference: If a dependency target is not declared
        CycleDetected: If the dependencies form a cycle
    """
    store = descriptors if isinstance(descriptors, DescriptorStore) else DescriptorStore(descriptors)
    by_name = {d.name: d for d in store.all()}

    edges: Dict[str, FrozenSet[str]] = {}
    for name, descriptor in by_name.items():
        deps = descriptor.dependencies()
        for target in sorted(deps):
            if target not in by_name:
                raise UnresolvedReference(name, target)
        edges[name] = deps

    cycle = find_cycle(list(by_name), edges)
    if cycle:
        logger.error(f"Cycle detected in declarations: {' -> '.join(cycle)}")
        raise CycleDetected(cycle)

    graph = DependencyGraph(descriptors=by_name, edges=edges)
    logger.debug(f"Built {graph!r}")
    return graph
