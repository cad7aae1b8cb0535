"""
Name assignment for unnamed nodes.

Naming is an explicit pass over a node collection; nothing is renamed as a
side effect of building the graph.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from lazynet.graph.ir import Graph, Node


class NameResolver:
    """
    Assigns unique names to the unnamed nodes of one graph.

    Names already taken anywhere in the graph are never reused, and named
    nodes are never touched, so running any mode twice is a no-op.
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self._taken: Set[str] = graph.names()
        self._counters: Dict[str, int] = defaultdict(int)

    def _next_name(self, prefix: str) -> str:
        while True:
            self._counters[prefix] += 1
            candidate = f"{prefix}{self._counters[prefix]}"
            if candidate not in self._taken:
                return candidate

    def _assign(self, node: Node, name: str) -> None:
        node.name = name
        self._taken.add(name)

    def _claim(self, base: str) -> str:
        if base not in self._taken:
            return base
        return self._next_name(f"{base}_")

    @staticmethod
    def _prefix(node: Node) -> str:
        return node.op

    def assign_default_names(self, nodes: Iterable[Node]) -> Dict[int, str]:
        """
        Name every unnamed node ``<kind><n>`` in construction order.

        Returns:
            Mapping from handle to the newly assigned name.
        """
        assigned: Dict[int, str] = {}
        for node in sorted(nodes, key=lambda n: n.handle):
            if node.name is not None:
                continue
            self._assign(node, self._next_name(self._prefix(node)))
            assigned[node.handle] = node.name  # type: ignore[assignment]
        return assigned

    def assign_sequential_names(self, order: Iterable[Node]) -> Dict[int, str]:
        """
        Name nodes after their position in evaluation order.

        Operation nodes become ``<kind><n>``; unnamed Params consumed by an
        operation become ``<operation>_p<k>``; selectors become
        ``<parent>_out<i>``. Leftover leaves fall back to ``<kind><n>``.
        """
        order = list(order)
        assigned: Dict[int, str] = {}

        def assign(node: Node, name: str) -> None:
            self._assign(node, name)
            assigned[node.handle] = name

        for node in order:
            if node.is_leaf or node.is_selector:
                continue
            if node.name is None:
                assign(node, self._next_name(self._prefix(node)))
            position = 0
            for parent in _unique(node.inputs):
                if not parent.is_param:
                    continue
                position += 1
                if parent.name is None:
                    assign(parent, self._claim(f"{node.name}_p{position}"))

        for node in order:
            if node.name is not None:
                continue
            if node.is_selector:
                assign(node, self._claim(f"{node.parent.name}_out{node.index}"))
            else:
                assign(node, self._next_name(self._prefix(node)))
        return assigned

    def assign_workspace_names(self, mapping: Mapping[str, Any]) -> Dict[int, str]:
        """
        Name unnamed nodes after the keys that reference them, e.g. ``locals()``.

        Keys starting with an underscore are ignored.
        """
        assigned: Dict[int, str] = {}
        for key, value in mapping.items():
            if not isinstance(value, Node) or key.startswith("_"):
                continue
            if value.graph is not self.graph or value.name is not None:
                continue
            if key in self._taken:
                continue
            self._assign(value, key)
            assigned[value.handle] = key
        return assigned


def unnamed(nodes: Iterable[Node]) -> List[Node]:
    return [node for node in nodes if node.name is None]


def duplicate_names(nodes: Iterable[Node]) -> Dict[str, List[Node]]:
    seen: Dict[str, List[Node]] = defaultdict(list)
    for node in nodes:
        if node.name is not None:
            seen[node.name].append(node)
    return {name: group for name, group in seen.items() if len(group) > 1}


def _unique(nodes: Iterable[Node]) -> List[Node]:
    seen: Set[int] = set()
    out: List[Node] = []
    for node in nodes:
        if node.handle not in seen:
            seen.add(node.handle)
            out.append(node)
    return out


def resolve_names(
    graph: Graph,
    order: List[Node],
    *,
    mode: str = "default",
    mapping: Optional[Mapping[str, Any]] = None,
) -> Dict[int, str]:
    """Run the requested naming mode over ``order`` if anything is unnamed."""
    if not unnamed(order):
        return {}
    resolver = NameResolver(graph)
    assigned: Dict[int, str] = {}
    if mapping is not None:
        assigned.update(resolver.assign_workspace_names(mapping))
    if mode == "sequential":
        assigned.update(resolver.assign_sequential_names(order))
    elif mode == "default":
        assigned.update(resolver.assign_default_names(order))
    else:
        raise ValueError(f"Unknown naming mode: {mode!r}")
    return assigned
