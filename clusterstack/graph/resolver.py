"""
Dependency resolution: turns a ResourceGraph into a realization order.
"""
from typing import Dict, Iterator, List, Set

from clusterstack.errors import CycleDetectedError, InvalidConfigError
from clusterstack.models.resource import ResourceGraph, ResourceNode


def _check_references(graph: ResourceGraph) -> None:
    for node in graph:
        for dep in node.depends_on:
            if dep not in graph:
                raise InvalidConfigError(
                    f"Resource '{node.node_id}' depends on undeclared resource '{dep}'"
                )


def _cycle_members(graph: ResourceGraph, remaining: Set[str]) -> List[str]:
    """
    Nodes left over after Kahn's sort are either on a cycle or downstream of one.
    Keep only the ones that can reach themselves, in declaration order.
    """
    def reaches(start: str, target: str) -> bool:
        stack = [d for d in graph.get(start).depends_on if d in remaining]
        seen: Set[str] = set()
        while stack:
            cur = stack.pop()
            if cur == target:
                return True
            if cur in seen:
                continue
            seen.add(cur)
            stack.extend(d for d in graph.get(cur).depends_on if d in remaining)
        return False

    members = [n for n in remaining if reaches(n, n)]
    return sorted(members, key=lambda n: graph.get(n).index)


def _topological_order(graph: ResourceGraph) -> List[ResourceNode]:
    _check_references(graph)

    indegree: Dict[str, int] = {n.node_id: len(n.depends_on) for n in graph}
    dependents: Dict[str, List[str]] = {n.node_id: [] for n in graph}
    for node in graph:
        for dep in node.depends_on:
            dependents[dep].append(node.node_id)

    # Level by level: a node joins the first wave after all of its dependencies,
    # and each wave is emitted in declaration order.
    wave = sorted((n for n in graph if indegree[n.node_id] == 0), key=lambda n: n.index)
    order: List[ResourceNode] = []
    while wave:
        order.extend(wave)
        following: List[ResourceNode] = []
        for node in wave:
            for child in dependents[node.node_id]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    following.append(graph.get(child))
        wave = sorted(following, key=lambda n: n.index)

    if len(order) != len(graph):
        done = {n.node_id for n in order}
        remaining = {n.node_id for n in graph if n.node_id not in done}
        raise CycleDetectedError(_cycle_members(graph, remaining))

    return order


def resolve_order(graph: ResourceGraph) -> Iterator[ResourceNode]:
    """
    Return the realization order of ``graph``: every node after all of its
    dependencies, ties broken by declaration order.

    Validation happens eagerly, so CycleDetectedError / InvalidConfigError are
    raised by this call rather than midway through iteration. Each call returns
    a fresh iterator.
    """
    return iter(_topological_order(graph))
