"""
Reachability traversal and deterministic topological ordering.
"""

from __future__ import annotations

import heapq
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from lazynet.graph.ir import Node


def _as_list(terminals: Node | Iterable[Node]) -> List[Node]:
    if isinstance(terminals, Node):
        return [terminals]
    return list(terminals)


def reachable_nodes(terminals: Node | Iterable[Node]) -> Dict[int, Node]:
    """
    Walk input edges from ``terminals``, visiting every node exactly once.

    Returns:
        Mapping from handle to node. Memoised by handle, so a subexpression
        shared by several consumers appears once.
    """
    reached: Dict[int, Node] = {}
    stack = list(reversed(_as_list(terminals)))
    while stack:
        node = stack.pop()
        if node.handle in reached:
            continue
        reached[node.handle] = node
        for parent in reversed(node.inputs):
            if parent.handle not in reached:
                stack.append(parent)
    return reached


def topological_order(terminals: Node | Iterable[Node]) -> List[Node]:
    """
    Kahn topo-sort of everything reachable from ``terminals``.

    Ready nodes are released in construction (handle) order, so the result is
    identical for repeated calls on the same graph.
    """
    reached = reachable_nodes(terminals)

    indeg: Dict[int, int] = {handle: 0 for handle in reached}
    succ: Dict[int, List[int]] = {handle: [] for handle in reached}
    for node in reached.values():
        for parent in {p.handle for p in node.inputs}:
            indeg[node.handle] += 1
            succ[parent].append(node.handle)

    ready = [handle for handle, deg in indeg.items() if deg == 0]
    heapq.heapify(ready)
    order: List[Node] = []

    while ready:
        current = heapq.heappop(ready)
        order.append(reached[current])
        for child in succ[current]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(ready, child)

    if len(order) != len(reached):
        raise ValueError("Graph has cycles or is malformed.")
    return order


def find_nodes(
    terminals: Node | Iterable[Node],
    *,
    op: Optional[str] = None,
    name: Optional[str] = None,
    predicate: Optional[Callable[[Node], bool]] = None,
) -> List[Node]:
    """Reachable nodes matching every given criterion, in topological order."""
    matches: List[Node] = []
    for node in topological_order(terminals):
        if op is not None and node.op != op:
            continue
        if name is not None and node.name != name:
            continue
        if predicate is not None and not predicate(node):
            continue
        matches.append(node)
    return matches


def leaves(order: Sequence[Node]) -> List[Node]:
    return [node for node in order if node.is_leaf]
