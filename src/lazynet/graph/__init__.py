"""
Lazy graph construction.

- `Graph`, `Node`, `Input`, `Param`, `Selector` (see `ir.py`)
- Functional builders that record operations instead of running them
- Naming passes and topological ordering helpers.
"""

from .ir import Graph, Input, Node, Param, Selector
from . import builders
from . import naming
from . import topo
from .naming import NameResolver
from .topo import find_nodes, topological_order

__all__ = [
    "Graph",
    "Input",
    "Node",
    "Param",
    "Selector",
    "builders",
    "naming",
    "topo",
    "NameResolver",
    "find_nodes",
    "topological_order",
]
